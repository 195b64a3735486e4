from django.contrib import admin

from .models import Conversation, Message


class MessageInline(admin.TabularInline):
    model = Message
    extra = 0
    readonly_fields = ('role', 'content', 'turn', 'sent_at')


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ('session_id', 'user_id', 'channel', 'state', 'turn_number', 'case_id', 'last_input_at')
    list_filter = ('state', 'channel')
    search_fields = ('session_id', 'user_id', 'case_id')
    readonly_fields = ('created_at', 'updated_at')
    inlines = [MessageInline]
