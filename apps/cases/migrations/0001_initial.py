import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='AuditLogEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('actor_id', models.CharField(db_index=True, max_length=100)),
                ('case_id', models.CharField(blank=True, db_index=True, default='', max_length=40)),
                ('action', models.CharField(max_length=50)),
                ('timestamp', models.DateTimeField()),
                ('details', models.JSONField(default=dict)),
            ],
            options={
                'verbose_name_plural': 'audit log entries',
                'ordering': ['-timestamp', '-id'],
            },
        ),
        migrations.CreateModel(
            name='CaseRecord',
            fields=[
                ('case_id', models.CharField(help_text='CASE- followed by 16 hex characters', max_length=40, primary_key=True, serialize=False, verbose_name='case id')),
                ('user_id', models.CharField(db_index=True, max_length=100)),
                ('session_id', models.CharField(db_index=True, max_length=100)),
                ('channel', models.CharField(max_length=20)),
                ('status', models.CharField(choices=[('NEW', 'New'), ('CONTACTED', 'Contacted'), ('IN_PROGRESS', 'In progress'), ('RESOLVED', 'Resolved')], default='NEW', max_length=20)),
                ('risk_level', models.CharField(choices=[('EMERGENCY', 'Emergency'), ('PHC_VISIT', 'PHC visit'), ('HOME_CARE', 'Home care')], max_length=20)),
                ('risk_tier_rank', models.PositiveSmallIntegerField(help_text='0 = EMERGENCY, 2 = HOME_CARE')),
                ('assigned_asha_id', models.CharField(blank=True, db_index=True, max_length=100, null=True)),
                ('needs_manual_review', models.BooleanField(default=False)),
                ('symptom_data', models.JSONField(default=dict)),
                ('assessment', models.JSONField(default=dict)),
                ('assessment_history', models.JSONField(default=list)),
                ('notified_follow_up_ids', models.JSONField(default=list)),
                ('version', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField()),
                ('updated_at', models.DateTimeField()),
            ],
            options={
                'ordering': ['risk_tier_rank', '-created_at', 'case_id'],
                'indexes': [models.Index(fields=['risk_tier_rank', 'created_at'], name='case_priority_idx')],
            },
        ),
        migrations.CreateModel(
            name='FollowUpRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('follow_up_id', models.CharField(max_length=40, unique=True)),
                ('asha_id', models.CharField(max_length=100)),
                ('action', models.CharField(choices=[('STATUS_CHANGE', 'Status change'), ('NOTE', 'Note'), ('REMINDER', 'Reminder'), ('ASSIGNMENT', 'Assignment'), ('REASSESSMENT', 'Reassessment'), ('NOTIFICATION_FAILED', 'Notification failed')], max_length=30)),
                ('notes', models.TextField(blank=True, default='')),
                ('timestamp', models.DateTimeField()),
                ('reminder_time', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('details', models.JSONField(default=dict)),
                ('case', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='follow_ups', to='cases.caserecord')),
            ],
            options={
                'ordering': ['timestamp', 'id'],
            },
        ),
    ]
