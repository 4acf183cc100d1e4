# reports/management/commands/initialize_reports.py
from django.core.management.base import BaseCommand
from core.models import SystemSetting


class Command(BaseCommand):
    help = 'Initialize default settings for reports module'

    def handle(self, *args, **options):
        settings_to_create = [
            {
                'key': 'reports_default_window',
                'value': 'monthly',
                'description': 'Default revenue window (today, weekly, monthly, quarterly, all)'
            },
            {
                'key': 'reports_monthly_series_length',
                'value': '6',
                'description': 'Number of months shown in the month-over-month revenue series'
            },
        ]

        created_count = 0
        for setting_data in settings_to_create:
            setting, created = SystemSetting.objects.get_or_create(
                key=setting_data['key'],
                defaults={
                    'value': setting_data['value'],
                    'description': setting_data['description'],
                    'is_active': True
                }
            )

            if created:
                created_count += 1
                self.stdout.write(
                    self.style.SUCCESS(f'Created setting: {setting.key}')
                )
            else:
                self.stdout.write(
                    self.style.WARNING(f'Setting already exists: {setting.key}')
                )

        self.stdout.write(
            self.style.SUCCESS(f'\nReports initialization complete. Created {created_count} new settings.')
        )
