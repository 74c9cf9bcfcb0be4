# Report aggregations for the reports page and the dashboard
# Pure functions over already-loaded sales and purchase orders, so the same
# code serves the HTML page, the CSV exports and the tests.

from calendar import month_name
from datetime import date, datetime, time

from models import PurchaseOrder


def monthly_totals(sales, orders, year=None):
    """
    Sales and purchase totals per calendar month of `year`.

    Only completed purchase orders count as purchases. Returns a dict with
    12 month buckets and the yearly totals:
        {'year', 'months': [{'month', 'name', 'sales', 'purchases'}, ...],
         'total_sales', 'total_purchases', 'net_profit'}
    """
    year = year or date.today().year
    months = [
        {'month': index, 'name': month_name[index + 1], 'sales': 0.0, 'purchases': 0.0}
        for index in range(12)
    ]

    for sale in sales:
        if sale.date.year == year:
            months[sale.date.month - 1]['sales'] += sale.total

    for order in orders:
        if order.status == PurchaseOrder.STATUS_COMPLETED and order.date.year == year:
            months[order.date.month - 1]['purchases'] += order.total

    total_sales = sum(bucket['sales'] for bucket in months)
    total_purchases = sum(bucket['purchases'] for bucket in months)
    return {
        'year': year,
        'months': months,
        'total_sales': total_sales,
        'total_purchases': total_purchases,
        'net_profit': total_sales - total_purchases,
    }


def date_window(start, end):
    """Inclusive datetime bounds: start of the first day to the last microsecond of the last."""
    return datetime.combine(start, time.min), datetime.combine(end, time.max)


def sales_detail(sales, start, end):
    """
    Top products by revenue and sales per customer for sales dated within
    [start 00:00, end 23:59:59.999999]. An end date before the start date
    simply matches nothing.
    """
    window_start, window_end = date_window(start, end)

    products = {}
    customers = {}
    for sale in sales:
        if not window_start <= sale.date <= window_end:
            continue

        customer_key = sale.customer_id if sale.customer_id is not None else sale.customer_name
        entry = customers.setdefault(customer_key, {'name': sale.customer_name, 'total': 0.0})
        entry['total'] += sale.total

        for item in sale.items:
            product_key = item.product_id if item.product_id is not None else item.product_name
            entry = products.setdefault(product_key, {'name': item.product_name, 'quantity': 0, 'revenue': 0.0})
            entry['quantity'] += item.quantity
            entry['revenue'] += item.quantity * item.price

    return {
        'top_products': sorted(products.values(), key=lambda row: row['revenue'], reverse=True),
        'sales_by_customer': sorted(customers.values(), key=lambda row: row['total'], reverse=True),
    }
