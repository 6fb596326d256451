from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Campaign',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=255)),
                ('discount_type', models.CharField(choices=[('percentage', 'Percentage'), ('fixed_amount', 'Fixed amount')], default='percentage', max_length=16)),
                ('discount_value', models.DecimalField(decimal_places=2, max_digits=10)),
                ('tier_thresholds', models.JSONField(blank=True, default=list)),
                ('total_codes', models.PositiveIntegerField(default=100)),
                ('codes_remaining', models.PositiveIntegerField(blank=True)),
                ('expiry_hours', models.PositiveIntegerField(default=24, help_text='Сколько часов действует выданный купон')),
                ('ip_limit_enabled', models.BooleanField(default=False)),
                ('max_claims_per_ip', models.PositiveIntegerField(default=1)),
                ('scope_type', models.CharField(choices=[('all', 'All products'), ('products', 'Products'), ('categories', 'Categories')], default='all', max_length=16)),
                ('scope_ids', models.JSONField(blank=True, default=list)),
                ('status', models.CharField(choices=[('active', 'Active'), ('paused', 'Paused'), ('ended', 'Ended')], default='active', max_length=16)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['-id'],
                'indexes': [models.Index(fields=['status', 'codes_remaining'], name='campaign_status_remaining_idx')],
                'constraints': [models.CheckConstraint(condition=models.Q(('codes_remaining__lte', models.F('total_codes'))), name='campaign_remaining_within_total')],
            },
        ),
    ]
