import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('campaigns', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='WaitlistEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('email', models.EmailField(max_length=254)),
                ('joined_at', models.DateTimeField(auto_now_add=True)),
                ('notified', models.BooleanField(default=False)),
                ('notified_at', models.DateTimeField(blank=True, null=True)),
                ('campaign', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='waitlist', to='campaigns.campaign')),
            ],
            options={
                'ordering': ['joined_at'],
                'constraints': [
                    models.UniqueConstraint(fields=('campaign', 'email'), name='unique_waitlist_campaign_email'),
                    models.UniqueConstraint(condition=models.Q(('campaign__isnull', True)), fields=('email',), name='unique_waitlist_global_email'),
                ],
            },
        ),
    ]
