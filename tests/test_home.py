from datetime import datetime, timedelta


def test_dashboard_requires_login(client):
    resp = client.get('/')
    assert resp.status_code in (301, 302)


def test_dashboard_shows_counts_and_five_recent_sales(user_client, make_sale):
    base = datetime(2024, 3, 1, 9, 0)
    for number in range(1, 7):
        make_sale(f'INV-{number:04d}', total=10.0 * number, date=base + timedelta(days=number))

    rv = user_client.get('/')
    assert rv.status_code == 200
    assert b'Dashboard' in rv.data
    for number in range(2, 7):
        assert f'INV-{number:04d}'.encode() in rv.data
    # oldest sale falls outside the five most recent
    assert b'INV-0001' not in rv.data


def test_dashboard_lists_low_stock_and_expiry(user_client, make_product):
    today = datetime.now().date()
    make_product(name='Paper points', stock=3)
    make_product(name='Latex gloves', stock=200)
    make_product(name='Impression silicone', stock=50, expiry_date=today + timedelta(days=5))

    rv = user_client.get('/')
    assert b'Paper points' in rv.data
    assert b'Latex gloves' not in rv.data
    assert b'Impression silicone' in rv.data
    assert b'Expiring soon' in rv.data


def test_header_notifications_link_to_low_stock_filter(user_client, make_product):
    make_product(name='Paper points', stock=3)
    rv = user_client.get('/about')
    assert b'1 low-stock product' in rv.data
    assert b'stock=low_stock' in rv.data
