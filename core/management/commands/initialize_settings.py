from django.core.management.base import BaseCommand
from core.models import SystemSetting


class Command(BaseCommand):
    help = 'Initialize default system settings'

    def handle(self, *args, **options):
        settings_data = {
            'clinic_name': ('Family Dental & Eye Clinic', 'Clinic name for receipts and reports'),
        }

        created_count = 0
        skipped_count = 0

        for key, (value, description) in settings_data.items():
            setting, created = SystemSetting.objects.get_or_create(
                key=key,
                defaults={
                    'value': value,
                    'is_active': True,
                    'description': description
                }
            )

            if created:
                created_count += 1
                self.stdout.write(self.style.SUCCESS(f'✓ Created setting: {key}'))
            else:
                skipped_count += 1
                # Only show this in verbose mode to keep logs clean
                if options.get('verbosity', 1) >= 2:
                    self.stdout.write(self.style.WARNING(f'⚠ Already exists: {key}'))

        # Summary message
        if created_count > 0:
            self.stdout.write(self.style.SUCCESS(
                f'\n✓ Settings initialization complete: {created_count} created, {skipped_count} already existed'
            ))
        else:
            self.stdout.write(self.style.SUCCESS(
                f'✓ All settings already initialized ({skipped_count} settings)'
            ))
