# Generated migration file
from decimal import Decimal

import django.core.validators
import django.utils.timezone
from django.db import migrations, models


def money(help_text):
    return models.DecimalField(
        decimal_places=2,
        default=Decimal('0.00'),
        help_text=help_text,
        max_digits=12,
        validators=[django.core.validators.MinValueValidator(Decimal('0.00'))],
    )


DEPARTMENT_CHOICES = [
    ('clinic', 'Clinic'),
    ('laboratory', 'Laboratory'),
    ('optical', 'Optical'),
    ('sale', 'Sales'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='CostLine',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('catalog_id', models.SlugField(max_length=100, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('category', models.CharField(blank=True, max_length=100)),
                ('department', models.CharField(blank=True, choices=DEPARTMENT_CHOICES, max_length=20)),
                ('unit_price', models.DecimalField(decimal_places=2, help_text='Price of a single unit', max_digits=12, validators=[django.core.validators.MinValueValidator(Decimal('0.00'))])),
                ('supports_units', models.BooleanField(default=False, help_text='Quantity multiplies the price (e.g. crowns per tooth)')),
                ('supports_pair', models.BooleanField(default=False, help_text='Can be billed as a pair (doubles the price)')),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['category', 'name'],
                'indexes': [
                    models.Index(fields=['department'], name='costline_department_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillableRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('department', models.CharField(choices=DEPARTMENT_CHOICES, max_length=20)),
                ('reference', models.CharField(help_text='Patient name, order or sale number', max_length=200)),
                ('notes', models.TextField(blank=True)),
                ('service_cost', money('Clinical service / sale items total')),
                ('lab_cost', money('Laboratory work total')),
                ('frame_cost', money('Optical frame price')),
                ('lens_cost', money('Optical lens price')),
                ('insurance_amount', money('Amount covered by insurance')),
                ('cash_amount', money('Single cash payment')),
                ('installments', models.JSONField(blank=True, default=list, help_text='Ordered installment entries (append-only once locked)')),
                ('balance', money('Total cost minus everything paid')),
                ('price_locked', models.BooleanField(default=False, help_text='Cost is frozen after the first payment')),
                ('price_locked_at', models.DateTimeField(blank=True, null=True)),
                ('price_locked_by', models.CharField(blank=True, max_length=150)),
                ('version', models.PositiveIntegerField(default=1)),
                ('created_by', models.CharField(blank=True, max_length=150)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['department', 'created_at'], name='record_dept_created_idx'),
                    models.Index(fields=['created_at'], name='record_created_idx'),
                    models.Index(fields=['price_locked'], name='record_locked_idx'),
                ],
            },
        ),
    ]
