import uuid

from django.db import models

from apps.core.models import BaseModel


class Conversation(BaseModel):
    """
    One channel intake session.
    symptom_state holds the SymptomData snapshot as JSON; the raw turns live in Message.
    """

    STATE_CHOICES = [
        ("ACTIVE", "Active"),
        ("COMPLETE", "Complete"),
        ("EXPIRED", "Expired"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    session_id = models.CharField(max_length=100, unique=True)
    user_id = models.CharField(max_length=100, db_index=True)
    channel = models.CharField(max_length=20)

    state = models.CharField(max_length=10, choices=STATE_CHOICES, default="ACTIVE")
    turn_number = models.IntegerField(default=0)
    pending_question = models.TextField(null=True, blank=True)
    closed_reason = models.CharField(max_length=100, null=True, blank=True)
    case_id = models.CharField(max_length=40, null=True, blank=True)

    symptom_state = models.JSONField(default=dict)
    last_input_at = models.DateTimeField()

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["state", "last_input_at"], name="conv_state_last_input_idx"),
        ]

    def __str__(self):
        return f"Conversation {self.session_id} ({self.state})"


class Message(models.Model):
    """
    Each chat message (patient OR agent), kept for audit and clarification context
    """

    ROLE_CHOICES = [
        ("patient", "Patient"),
        ("agent", "Agent"),
    ]

    conversation = models.ForeignKey(
        Conversation,
        related_name="messages",
        on_delete=models.CASCADE
    )

    role = models.CharField(max_length=10, choices=ROLE_CHOICES)
    content = models.TextField()
    turn = models.IntegerField()
    sent_at = models.DateTimeField()

    class Meta:
        ordering = ["turn", "id"]

    def __str__(self):
        return f"{self.role}: {self.content[:40]}"
