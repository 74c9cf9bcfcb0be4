from datetime import date, datetime
from types import SimpleNamespace

import transactions
from transactions import LineInput
from app import db, Customer, Sale
from reporting import monthly_totals, sales_detail


def sale(when, total, customer_id=1, customer_name='Clinic', items=()):
    return SimpleNamespace(
        date=when,
        total=total,
        customer_id=customer_id,
        customer_name=customer_name,
        items=[
            SimpleNamespace(product_id=pid, product_name=name, quantity=qty, price=price)
            for pid, name, qty, price in items
        ],
    )


def order(when, total, status='completed'):
    return SimpleNamespace(date=when, total=total, status=status)


def test_monthly_totals_buckets_current_year_and_completed_orders():
    sales = [
        sale(datetime(2024, 1, 5), 100.0),
        sale(datetime(2024, 3, 20), 50.0),
        sale(datetime(2023, 12, 31, 23, 0), 999.0),
    ]
    orders = [
        order(datetime(2024, 1, 10), 40.0),
        order(datetime(2024, 2, 1), 70.0, status='pending'),
        order(datetime(2024, 2, 2), 30.0, status='cancelled'),
    ]

    report = monthly_totals(sales, orders, 2024)

    assert len(report['months']) == 12
    assert report['months'][0] == {'month': 0, 'name': 'January', 'sales': 100.0, 'purchases': 40.0}
    assert report['months'][1]['purchases'] == 0.0
    assert report['months'][2]['sales'] == 50.0
    assert report['total_sales'] == 150.0
    assert report['total_purchases'] == 40.0
    assert report['net_profit'] == 110.0


def test_sales_detail_window_is_inclusive_of_whole_days():
    start, end = date(2024, 5, 1), date(2024, 5, 31)
    sales = [
        sale(datetime(2024, 5, 1, 0, 0), 10.0, items=[(1, 'Gloves', 1, 10.0)]),
        sale(datetime(2024, 5, 31, 23, 59, 59), 20.0, items=[(1, 'Gloves', 2, 10.0)]),
        sale(datetime(2024, 6, 1, 0, 0), 500.0, items=[(1, 'Gloves', 50, 10.0)]),
        sale(datetime(2024, 4, 30, 23, 59), 500.0, items=[(1, 'Gloves', 50, 10.0)]),
    ]
    detail = sales_detail(sales, start, end)
    assert detail['top_products'] == [{'name': 'Gloves', 'quantity': 3, 'revenue': 30.0}]
    assert detail['sales_by_customer'] == [{'name': 'Clinic', 'total': 30.0}]


def test_sales_detail_sorts_by_revenue_not_quantity():
    sales = [
        sale(datetime(2024, 5, 2), 150.0, customer_id=1, customer_name='Small clinic',
             items=[(1, 'Composite', 1, 100.0), (2, 'Paper points', 10, 5.0)]),
        sale(datetime(2024, 5, 3), 400.0, customer_id=2, customer_name='Big center',
             items=[(1, 'Composite', 4, 100.0)]),
    ]
    detail = sales_detail(sales, date(2024, 5, 1), date(2024, 5, 31))
    assert [row['name'] for row in detail['top_products']] == ['Composite', 'Paper points']
    assert detail['top_products'][0] == {'name': 'Composite', 'quantity': 5, 'revenue': 500.0}
    assert [row['name'] for row in detail['sales_by_customer']] == ['Big center', 'Small clinic']


def test_end_before_start_gives_empty_report():
    sales = [sale(datetime(2024, 5, 2), 10.0, items=[(1, 'Gloves', 1, 10.0)])]
    detail = sales_detail(sales, date(2024, 5, 10), date(2024, 5, 1))
    assert detail == {'top_products': [], 'sales_by_customer': []}


def test_reports_page_requires_login(client):
    resp = client.get('/reports', follow_redirects=False)
    assert resp.status_code in (301, 302)


def test_reports_page_renders_after_login(user_client, make_sale):
    make_sale('INV-0001', total=250.0, date=datetime(2024, 2, 14, 10, 0), customer_name='Smile Dental Center',
              items=[(1, 'Nano composite', 1, 250.0)])

    rv = user_client.get('/reports?year=2024&start=2024-02-01&end=2024-02-29')
    assert rv.status_code == 200
    assert b'Monthly totals 2024' in rv.data
    assert b'Top products' in rv.data
    assert b'Nano composite' in rv.data
    assert b'Smile Dental Center' in rv.data
    assert b'250.00' in rv.data


def test_report_export_without_data_flashes(user_client):
    resp = user_client.get('/reports/export/top-products?start=2024-01-01&end=2024-01-31', follow_redirects=True)
    assert b'No data to export for the selected period' in resp.data


def test_report_export_top_products(user_client, make_sale):
    make_sale('INV-0001', total=30.0, date=datetime(2024, 2, 14, 10, 0), items=[(1, 'Gloves', 3, 10.0)])
    resp = user_client.get('/reports/export/top-products?start=2024-02-01&end=2024-02-29')
    assert resp.status_code == 200
    assert 'top-products-report-2024-02-01-to-2024-02-29-export-' in resp.headers['Content-Disposition']
    assert resp.data.decode('utf-8-sig') == 'name,quantity,revenue\n"Gloves","3","30"'


def test_unknown_report_export_is_404(user_client):
    assert user_client.get('/reports/export/everything').status_code == 404


def test_new_customer_is_not_merged_with_a_deleted_one(app, regular_user, make_product):
    pid = make_product(stock=20, sell_price=60.0).id
    closed = Customer(name='Closed Clinic', phone='', address='')
    db.session.add(closed)
    db.session.commit()
    transactions.save_sale(closed, [LineInput(pid, 2)], regular_user)
    db.session.delete(closed)
    db.session.commit()

    opened = Customer(name='New Clinic', phone='', address='')
    db.session.add(opened)
    db.session.commit()
    transactions.save_sale(opened, [LineInput(pid, 2)], regular_user)

    today = date.today()
    detail = sales_detail(Sale.query.all(), today, today)
    assert sorted((row['name'], row['total']) for row in detail['sales_by_customer']) == [
        ('Closed Clinic', 120.0), ('New Clinic', 120.0),
    ]
