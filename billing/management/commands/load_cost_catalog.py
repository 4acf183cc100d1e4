import json
import logging

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from billing.catalog import CostCatalog
from billing.exceptions import BillingError
from billing.models import DEPARTMENT_CHOICES, CostLine
from core.models import AuditLog

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Load cost lines (procedures, frames, lenses, items) from a JSON file'

    def add_arguments(self, parser):
        parser.add_argument(
            'path',
            nargs='?',
            help='JSON file with a list of cost lines (defaults to settings.COST_CATALOG_FILE)'
        )
        parser.add_argument(
            '--deactivate-missing',
            action='store_true',
            help='Mark cost lines that are not in the file as inactive'
        )

    def handle(self, *args, **options):
        path = options.get('path') or settings.COST_CATALOG_FILE

        try:
            with open(path, encoding='utf-8') as handle:
                entries = json.load(handle)
        except OSError as e:
            raise CommandError(f'Cannot read {path}: {e}')
        except ValueError as e:
            raise CommandError(f'{path} is not valid JSON: {e}')

        if not isinstance(entries, list):
            raise CommandError(f'{path} must contain a list of cost lines')

        departments = {value for value, _ in DEPARTMENT_CHOICES}
        seen = set()
        for position, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict):
                raise CommandError(f'Cost line #{position} in {path} must be an object')
            catalog_id = entry.get('catalog_id')
            if catalog_id in seen:
                raise CommandError(f"Duplicate catalog_id '{catalog_id}' in {path}")
            seen.add(catalog_id)
            if entry.get('department', '') not in departments | {''}:
                raise CommandError(f"Unknown department '{entry.get('department')}' for {entry.get('catalog_id')}")

        # Validates ids and prices before anything touches the table
        try:
            catalog = CostCatalog.from_entries(entries)
        except (BillingError, KeyError) as e:
            raise CommandError(f'Invalid cost line in {path}: {e}')

        created_count = 0
        updated_count = 0

        with transaction.atomic():
            for entry in entries:
                line = catalog.get(entry['catalog_id'])
                _, created = CostLine.objects.update_or_create(
                    catalog_id=line.catalog_id,
                    defaults={
                        'name': line.name,
                        'category': line.category,
                        'department': entry.get('department', ''),
                        'unit_price': line.unit_price,
                        'supports_units': line.supports_units,
                        'supports_pair': line.supports_pair,
                        'is_active': True,
                    }
                )
                if created:
                    created_count += 1
                    if options.get('verbosity', 1) >= 2:
                        self.stdout.write(self.style.SUCCESS(f'✓ Created cost line: {line.catalog_id}'))
                else:
                    updated_count += 1

            deactivated_count = 0
            if options.get('deactivate_missing'):
                deactivated_count = CostLine.objects.filter(is_active=True).exclude(
                    catalog_id__in=[entry['catalog_id'] for entry in entries]
                ).update(is_active=False)

            AuditLog.log_action(
                actor='system',
                action='catalog_load',
                model_name='costline',
                changes={
                    'source': str(path),
                    'created': created_count,
                    'updated': updated_count,
                    'deactivated': deactivated_count,
                },
                description=f'Loaded {len(entries)} cost lines from {path}',
            )

        logger.info(f'Cost catalog loaded from {path}: {created_count} created, {updated_count} updated')
        self.stdout.write(self.style.SUCCESS(
            f'\n✓ Cost catalog loaded: {created_count} created, {updated_count} updated, '
            f'{deactivated_count} deactivated'
        ))
