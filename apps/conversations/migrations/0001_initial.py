import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Conversation',
            fields=[
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('session_id', models.CharField(max_length=100, unique=True)),
                ('user_id', models.CharField(db_index=True, max_length=100)),
                ('channel', models.CharField(max_length=20)),
                ('state', models.CharField(choices=[('ACTIVE', 'Active'), ('COMPLETE', 'Complete'), ('EXPIRED', 'Expired')], default='ACTIVE', max_length=10)),
                ('turn_number', models.IntegerField(default=0)),
                ('pending_question', models.TextField(blank=True, null=True)),
                ('closed_reason', models.CharField(blank=True, max_length=100, null=True)),
                ('case_id', models.CharField(blank=True, max_length=40, null=True)),
                ('symptom_state', models.JSONField(default=dict)),
                ('last_input_at', models.DateTimeField()),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['state', 'last_input_at'], name='conv_state_last_input_idx')],
            },
        ),
        migrations.CreateModel(
            name='Message',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('role', models.CharField(choices=[('patient', 'Patient'), ('agent', 'Agent')], max_length=10)),
                ('content', models.TextField()),
                ('turn', models.IntegerField()),
                ('sent_at', models.DateTimeField()),
                ('conversation', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='messages', to='conversations.conversation')),
            ],
            options={
                'ordering': ['turn', 'id'],
            },
        ),
    ]
