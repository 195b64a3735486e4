from django.db import models

from apps.core.models import BaseModel


class CaseRecord(BaseModel):
    """
    Persisted Case aggregate.

    risk_level / risk_tier_rank are denormalized from the current assessment
    so the priority query runs on an index; version is the optimistic
    concurrency counter checked on every save.
    """

    STATUS_CHOICES = [
        ('NEW', 'New'),
        ('CONTACTED', 'Contacted'),
        ('IN_PROGRESS', 'In progress'),
        ('RESOLVED', 'Resolved'),
    ]

    RISK_LEVEL_CHOICES = [
        ('EMERGENCY', 'Emergency'),
        ('PHC_VISIT', 'PHC visit'),
        ('HOME_CARE', 'Home care'),
    ]

    case_id = models.CharField(
        'case id',
        max_length=40,
        primary_key=True,
        help_text='CASE- followed by 16 hex characters'
    )

    user_id = models.CharField(max_length=100, db_index=True)
    session_id = models.CharField(max_length=100, db_index=True)
    channel = models.CharField(max_length=20)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='NEW')
    risk_level = models.CharField(max_length=20, choices=RISK_LEVEL_CHOICES)
    risk_tier_rank = models.PositiveSmallIntegerField(help_text='0 = EMERGENCY, 2 = HOME_CARE')
    assigned_asha_id = models.CharField(max_length=100, null=True, blank=True, db_index=True)
    needs_manual_review = models.BooleanField(default=False)

    symptom_data = models.JSONField(default=dict)
    assessment = models.JSONField(default=dict)
    assessment_history = models.JSONField(default=list)
    notified_follow_up_ids = models.JSONField(default=list)

    version = models.PositiveIntegerField(default=0)

    # Set by the case engine's clock, not by the database
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField()

    class Meta:
        ordering = ['risk_tier_rank', '-created_at', 'case_id']
        indexes = [
            models.Index(fields=['risk_tier_rank', 'created_at'], name='case_priority_idx'),
        ]

    def __str__(self):
        return f"{self.case_id} ({self.risk_level}, {self.status})"


class FollowUpRecord(models.Model):
    """Append-only follow-up history of a case"""

    ACTION_CHOICES = [
        ('STATUS_CHANGE', 'Status change'),
        ('NOTE', 'Note'),
        ('REMINDER', 'Reminder'),
        ('ASSIGNMENT', 'Assignment'),
        ('REASSESSMENT', 'Reassessment'),
        ('NOTIFICATION_FAILED', 'Notification failed'),
    ]

    follow_up_id = models.CharField(max_length=40, unique=True)
    case = models.ForeignKey(
        CaseRecord,
        related_name='follow_ups',
        on_delete=models.CASCADE
    )

    asha_id = models.CharField(max_length=100)
    action = models.CharField(max_length=30, choices=ACTION_CHOICES)
    notes = models.TextField(blank=True, default='')
    timestamp = models.DateTimeField()
    reminder_time = models.DateTimeField(null=True, blank=True, db_index=True)
    notified = models.BooleanField(default=False, db_index=True, help_text='Reminder already claimed for delivery')
    details = models.JSONField(default=dict)

    class Meta:
        ordering = ['timestamp', 'id']

    def __str__(self):
        return f"{self.action} on {self.case_id} by {self.asha_id}"


class AuditLogEntry(models.Model):
    """
    Compliance trail: one row per dashboard read or write.
    case_id is plain text so entries outlive deleted cases.
    """

    actor_id = models.CharField(max_length=100, db_index=True)
    case_id = models.CharField(max_length=40, blank=True, default='', db_index=True)
    action = models.CharField(max_length=50)
    timestamp = models.DateTimeField()
    details = models.JSONField(default=dict)

    class Meta:
        ordering = ['-timestamp', '-id']
        verbose_name_plural = 'audit log entries'

    def __str__(self):
        return f"{self.timestamp:%Y-%m-%d %H:%M:%S} {self.actor_id} {self.action} {self.case_id}"
