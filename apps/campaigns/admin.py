from django import forms
from django.contrib import admin, messages
from django.core.exceptions import ValidationError

from apps.audit.models import AuditAction
from apps.audit.services import log_audit
from .models import Campaign
from .services import (
    EDITABLE_FIELDS, campaign_snapshot, end_campaign, pause_campaign, resume_campaign, update_campaign,
)


class CampaignAdminForm(forms.ModelForm):

    class Meta:
        model = Campaign
        fields = '__all__'

    def clean_total_codes(self):
        total = self.cleaned_data['total_codes']
        if self.instance.pk:
            claimed = self.instance.claimed_count()
            if total < claimed:
                raise ValidationError(f'Количество кодов не может быть меньше уже выданных ({claimed})')
        return total


@admin.register(Campaign)
class CampaignAdmin(admin.ModelAdmin):
    form = CampaignAdminForm
    list_display = ('id', 'name', 'discount_type', 'discount_value', 'codes_remaining', 'total_codes', 'status')
    search_fields = ('name',)
    list_filter = ('status', 'discount_type', 'scope_type')
    # статус меняется только действиями ниже
    readonly_fields = ('codes_remaining', 'status', 'created_at', 'updated_at')
    date_hierarchy = 'created_at'
    actions = ('pause_selected', 'resume_selected', 'end_selected')

    def save_model(self, request, obj, form, change):
        if not change:
            super().save_model(request, obj, form, change)
            log_audit(AuditAction.CAMPAIGN_CREATED, obj, new_value=campaign_snapshot(obj), request=request)
            return
        data = {name: form.cleaned_data[name] for name in form.changed_data if name in EDITABLE_FIELDS}
        try:
            updated = update_campaign(obj, data, request=request)
        except ValidationError as e:
            self.message_user(request, f'{obj.name}: {"; ".join(e.messages)}', level=messages.ERROR)
            obj.refresh_from_db()
            return
        obj.total_codes = updated.total_codes
        obj.codes_remaining = updated.codes_remaining

    def _apply(self, request, queryset, action, label):
        done = 0
        for campaign in queryset:
            try:
                action(campaign, request=request)
                done += 1
            except ValidationError as e:
                self.message_user(request, f'{campaign.name}: {"; ".join(e.messages)}', level=messages.ERROR)
        self.message_user(request, f'{label}: {done}')

    @admin.action(description='Приостановить')
    def pause_selected(self, request, queryset):
        self._apply(request, queryset, pause_campaign, 'Приостановлено')

    @admin.action(description='Возобновить')
    def resume_selected(self, request, queryset):
        self._apply(request, queryset, resume_campaign, 'Возобновлено')

    @admin.action(description='Завершить')
    def end_selected(self, request, queryset):
        self._apply(request, queryset, end_campaign, 'Завершено')
