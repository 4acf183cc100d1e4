# reports/models.py

# No models needed for reports module
# All figures come from billing.aggregation over BillableRecord:
# - per-channel totals (insurance, cash, installments) are summed separately
# - balances are recomputed from current cost and payment fields
# - the monthly series is built from records' created_at, never generated
