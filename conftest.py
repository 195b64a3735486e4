import pytest
from rest_framework.test import APIClient


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def asha_user(django_user_model):
    return django_user_model.objects.create_user(username='asha-001', password='not-used')


@pytest.fixture
def staff_user(django_user_model):
    return django_user_model.objects.create_user(username='supervisor', password='not-used', is_staff=True)


@pytest.fixture
def asha_client(api_client, asha_user):
    api_client.force_authenticate(user=asha_user)
    return api_client
