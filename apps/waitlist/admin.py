from django.contrib import admin

from .models import WaitlistEntry


@admin.register(WaitlistEntry)
class WaitlistEntryAdmin(admin.ModelAdmin):
    list_display = ('email', 'campaign', 'notified', 'joined_at', 'notified_at')
    list_filter = ('notified', 'campaign')
    search_fields = ('email',)
    readonly_fields = ('joined_at', 'notified_at')
