from django.contrib import admin

from .models import Claim


@admin.register(Claim)
class ClaimAdmin(admin.ModelAdmin):
    list_display = ('issued_code', 'campaign', 'identity', 'status', 'discount_value_applied', 'reserved_at', 'expires_at')
    list_filter = ('status', 'verified', 'campaign')
    search_fields = ('issued_code', 'identity', 'ip_address', 'campaign__name')
    date_hierarchy = 'reserved_at'
    readonly_fields = (
        'issued_code', 'status', 'verified', 'discount_value_applied', 'reserved_at', 'verified_at',
        'finalized_at', 'released_at', 'coupon_id', 'issuer_attempts', 'last_issuer_error',
    )

    fieldsets = (
        (None, {
            'fields': ('campaign', 'identity', 'user', 'issued_code', 'status', 'verified', 'discount_value_applied')
        }),
        ('Временные рамки', {
            'fields': ('reserved_at', 'expires_at', 'verified_at', 'finalized_at', 'released_at')
        }),
        ('Магазин', {
            'fields': ('coupon_id', 'issuer_attempts', 'last_issuer_error'),
            'classes': ('collapse',)
        }),
        ('Антифрод', {
            'fields': ('ip_address',),
            'classes': ('collapse',)
        }),
    )
