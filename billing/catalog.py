# billing/catalog.py
"""
Cost model: turns the lines a department screen selected into a total.

The catalog is handed in by the caller (built from the CostLine table or
from plain entries), so pricing can differ per deployment without code
changes. Nothing here reads or writes a billable record.
"""
from collections import namedtuple
from decimal import Decimal, InvalidOperation

from .exceptions import UnknownCostLine, InvalidAmount
from .utils import ZERO, check_max_amount, quantize, to_amount

CatalogEntry = namedtuple(
    'CatalogEntry',
    ['catalog_id', 'name', 'unit_price', 'supports_units', 'supports_pair', 'category'],
)

# Units of one line on a single bill
MAX_QUANTITY = 9999

SINGLE = 'single'
PAIR = 'pair'


def _resolve_quantity(raw):
    """Quantity defaults to 1 and never drops below 1"""
    if raw in (None, ''):
        return 1
    if isinstance(raw, bool):
        raise InvalidAmount("quantity must be a whole number", field='quantity')
    try:
        quantity = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount("quantity must be a whole number", field='quantity')
    if not quantity.is_finite() or quantity != quantity.to_integral_value():
        raise InvalidAmount("quantity must be a whole number", field='quantity')
    if quantity > MAX_QUANTITY:
        raise InvalidAmount(f"quantity cannot exceed {MAX_QUANTITY}", field='quantity')
    return max(1, int(quantity))


def _resolve_pairing(raw):
    if raw is True:
        return PAIR
    if raw in (None, False, ''):
        return SINGLE
    return PAIR if str(raw).strip().lower() == PAIR else SINGLE


def _describe_metadata(description):
    if not description:
        return ''
    if isinstance(description, (list, tuple)):
        return ', '.join(str(part) for part in description)
    return str(description)


class CostCatalog:
    """Read-only price list keyed by catalog id"""

    def __init__(self, entries=()):
        self._entries = {}
        for entry in entries:
            self._entries[entry.catalog_id] = entry

    @classmethod
    def from_entries(cls, entries):
        """
        Build a catalog from plain dicts, e.g.
        {'catalog_id': 'filling', 'name': 'Filling', 'unit_price': 5000, 'supports_units': True}
        """
        built = []
        for raw in entries:
            built.append(CatalogEntry(
                catalog_id=raw['catalog_id'],
                name=raw.get('name') or raw['catalog_id'],
                unit_price=to_amount(raw['unit_price'], field='unit_price'),
                supports_units=bool(raw.get('supports_units', False)),
                supports_pair=bool(raw.get('supports_pair', False)),
                category=raw.get('category', ''),
            ))
        return cls(built)

    @classmethod
    def from_database(cls, department=None):
        """Active CostLine rows, optionally narrowed to one department"""
        from .models import CostLine

        queryset = CostLine.objects.filter(is_active=True)
        if department:
            queryset = queryset.filter(department__in=[department, ''])

        return cls(
            CatalogEntry(
                catalog_id=line.catalog_id,
                name=line.name,
                unit_price=quantize(line.unit_price),
                supports_units=line.supports_units,
                supports_pair=line.supports_pair,
                category=line.category,
            )
            for line in queryset
        )

    def __contains__(self, catalog_id):
        return catalog_id in self._entries

    def __len__(self):
        return len(self._entries)

    def get(self, catalog_id):
        try:
            return self._entries[catalog_id]
        except KeyError:
            raise UnknownCostLine(f"Unknown cost line: {catalog_id}", catalog_id=catalog_id)

    def price_lines(self, selected_lines):
        """
        Price every selected line.

        Each selection is a dict with `catalog_id`, optional `quantity`
        (alias `qty`), optional `pairing` ('single' or 'pair') and optional
        `description` metadata such as tooth positions. The metadata only
        ends up in the label.
        """
        priced = []
        for selection in selected_lines:
            catalog_id = selection.get('catalog_id', selection.get('id'))
            entry = self.get(catalog_id)

            quantity = _resolve_quantity(selection.get('quantity', selection.get('qty')))
            if not entry.supports_units:
                quantity = 1

            pairing = _resolve_pairing(selection.get('pairing', selection.get('mode')))
            multiplier = 2 if entry.supports_pair and pairing == PAIR else 1

            amount = entry.unit_price * quantity * multiplier
            check_max_amount(amount, field=entry.catalog_id)
            amount = quantize(amount)
            priced.append({
                'catalog_id': entry.catalog_id,
                'name': entry.name,
                'unit_price': entry.unit_price,
                'quantity': quantity,
                'multiplier': multiplier,
                'amount': amount,
                'label': self._label(entry, quantity, multiplier, selection.get('description')),
            })
        return priced

    def compute_total(self, selected_lines):
        """Sum of unit_price * quantity * multiplier over the selection"""
        total = sum((line['amount'] for line in self.price_lines(selected_lines)), ZERO)
        return check_max_amount(total, field='total')

    def describe(self, selected_lines):
        """Human-readable labels for the selection, in order"""
        return [line['label'] for line in self.price_lines(selected_lines)]

    @staticmethod
    def _label(entry, quantity, multiplier, description):
        label = entry.name
        if quantity > 1:
            label += f" x{quantity}"
        if multiplier == 2:
            label += " (pair)"
        metadata = _describe_metadata(description)
        if metadata:
            label += f" [{metadata}]"
        return label
