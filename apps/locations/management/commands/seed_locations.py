"""
Management command to seed a demo location hierarchy.

Creates one state with two districts, each with two areas of two units.
This command is idempotent and safe to re-run.
"""
from django.core.management.base import BaseCommand
from django.db import transaction

from apps.locations.models import Location


class Command(BaseCommand):
    help = 'Seed a demo state > district > area > unit hierarchy (idempotent)'

    # (code, name, type, parent code)
    DEMO_LOCATIONS = [
        ('KL', 'Kerala', Location.TYPE_STATE, None),

        ('KL-TVM', 'Thiruvananthapuram', Location.TYPE_DISTRICT, 'KL'),
        ('KL-TVM-NYT', 'Neyyattinkara', Location.TYPE_AREA, 'KL-TVM'),
        ('KL-TVM-NYT-01', 'Neyyattinkara Unit 1', Location.TYPE_UNIT, 'KL-TVM-NYT'),
        ('KL-TVM-NYT-02', 'Neyyattinkara Unit 2', Location.TYPE_UNIT, 'KL-TVM-NYT'),
        ('KL-TVM-ATL', 'Attingal', Location.TYPE_AREA, 'KL-TVM'),
        ('KL-TVM-ATL-01', 'Attingal Unit 1', Location.TYPE_UNIT, 'KL-TVM-ATL'),
        ('KL-TVM-ATL-02', 'Attingal Unit 2', Location.TYPE_UNIT, 'KL-TVM-ATL'),

        ('KL-MLP', 'Malappuram', Location.TYPE_DISTRICT, 'KL'),
        ('KL-MLP-TIR', 'Tirur', Location.TYPE_AREA, 'KL-MLP'),
        ('KL-MLP-TIR-01', 'Tirur Unit 1', Location.TYPE_UNIT, 'KL-MLP-TIR'),
        ('KL-MLP-TIR-02', 'Tirur Unit 2', Location.TYPE_UNIT, 'KL-MLP-TIR'),
        ('KL-MLP-PMN', 'Perinthalmanna', Location.TYPE_AREA, 'KL-MLP'),
        ('KL-MLP-PMN-01', 'Perinthalmanna Unit 1', Location.TYPE_UNIT, 'KL-MLP-PMN'),
        ('KL-MLP-PMN-02', 'Perinthalmanna Unit 2', Location.TYPE_UNIT, 'KL-MLP-PMN'),
    ]

    @transaction.atomic
    def handle(self, *args, **options):
        """Create any missing demo locations."""
        created_count = 0

        self.stdout.write('Seeding demo locations...\n')

        for code, name, location_type, parent_code in self.DEMO_LOCATIONS:
            parent = Location.objects.by_code(parent_code) if parent_code else None
            location, created = Location.objects.get_or_create(
                code=code,
                defaults={
                    'name': name,
                    'type': location_type,
                    'parent': parent,
                }
            )
            if created:
                location.full_clean()
                created_count += 1
                self.stdout.write(self.style.SUCCESS(f'Created: {location.code} ({location.type})'))
            else:
                self.stdout.write(self.style.HTTP_INFO(f'  Exists: {location.code}'))

        self.stdout.write(
            self.style.SUCCESS(
                f'\nSeeding complete: {created_count} created, '
                f'{len(self.DEMO_LOCATIONS) - created_count} unchanged'
            )
        )
