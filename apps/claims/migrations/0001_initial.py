import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('campaigns', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Claim',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('identity', models.EmailField(max_length=254)),
                ('issued_code', models.CharField(max_length=50, unique=True)),
                ('status', models.CharField(choices=[('reserved', 'Reserved'), ('verified', 'Verified'), ('finalized', 'Finalized'), ('released', 'Released'), ('expired', 'Expired')], default='reserved', max_length=16)),
                ('verified', models.BooleanField(default=False)),
                ('ip_address', models.GenericIPAddressField(blank=True, null=True)),
                ('discount_value_applied', models.DecimalField(decimal_places=2, max_digits=10)),
                ('reserved_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('expires_at', models.DateTimeField()),
                ('verified_at', models.DateTimeField(blank=True, null=True)),
                ('finalized_at', models.DateTimeField(blank=True, null=True)),
                ('released_at', models.DateTimeField(blank=True, null=True)),
                ('coupon_id', models.CharField(blank=True, max_length=64)),
                ('issuer_attempts', models.PositiveIntegerField(default=0)),
                ('last_issuer_error', models.TextField(blank=True)),
                ('campaign', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='claims', to='campaigns.campaign')),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='fomo_claims', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-reserved_at'],
                'indexes': [
                    models.Index(fields=['campaign', 'identity'], name='claim_campaign_identity_idx'),
                    models.Index(fields=['campaign', 'ip_address', 'verified'], name='claim_campaign_ip_idx'),
                    models.Index(fields=['status', 'expires_at'], name='claim_status_expires_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('verified', True)), fields=('campaign', 'identity'), name='unique_verified_claim_per_identity'),
                ],
            },
        ),
    ]
