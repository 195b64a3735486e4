from django.contrib import admin

from .models import AuditLogEntry, CaseRecord, FollowUpRecord


class FollowUpInline(admin.TabularInline):
    model = FollowUpRecord
    extra = 0
    can_delete = False
    readonly_fields = ('follow_up_id', 'asha_id', 'action', 'notes', 'timestamp', 'reminder_time', 'details')


@admin.register(CaseRecord)
class CaseRecordAdmin(admin.ModelAdmin):
    """
    Read-mostly view of cases. Status changes go through the dashboard API
    so the transition rules and the audit trail always apply.
    """

    list_display = ('case_id', 'risk_level', 'status', 'assigned_asha_id', 'needs_manual_review', 'created_at')
    list_filter = ('risk_level', 'status', 'needs_manual_review', 'channel')
    search_fields = ('case_id', 'user_id', 'session_id', 'assigned_asha_id')
    ordering = ('risk_tier_rank', '-created_at', 'case_id')
    readonly_fields = (
        'case_id', 'user_id', 'session_id', 'channel', 'status', 'risk_level', 'risk_tier_rank',
        'assigned_asha_id', 'needs_manual_review', 'symptom_data', 'assessment',
        'assessment_history', 'notified_follow_up_ids', 'version', 'created_at', 'updated_at',
    )
    inlines = [FollowUpInline]

    fieldsets = (
        ('Case', {
            'fields': ('case_id', 'status', 'risk_level', 'risk_tier_rank', 'assigned_asha_id', 'needs_manual_review')
        }),
        ('Origin', {
            'fields': ('user_id', 'session_id', 'channel')
        }),
        ('Assessment', {
            'fields': ('symptom_data', 'assessment', 'assessment_history'),
            'classes': ('collapse',)
        }),
        ('Bookkeeping', {
            'fields': ('notified_follow_up_ids', 'version', 'created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )


@admin.register(AuditLogEntry)
class AuditLogEntryAdmin(admin.ModelAdmin):
    list_display = ('timestamp', 'actor_id', 'action', 'case_id')
    list_filter = ('action',)
    search_fields = ('actor_id', 'case_id')
    readonly_fields = ('actor_id', 'case_id', 'action', 'timestamp', 'details')

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
