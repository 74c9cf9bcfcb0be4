"""
SALES FLOW TESTS
Recording, editing and deleting sales and the stock movements they cause.

This test module covers:
- Valid sales decrement stock and get sequential invoice numbers
- Sales that exceed stock are rejected with nothing written
- Multi-line sales are all-or-nothing
- Edits move stock by the net change per product (removed lines give stock back)
- Deleting a sale restores stock
- Discounts only for admins; sale edit/delete only for admins
"""

import pytest

import transactions
from transactions import LineInput
from app import db, Product, Sale


def test_sale_decreases_stock_and_prevents_overselling(user_client, customer, make_product):
    """
    Valid sale decreases stock; a sale beyond the remaining stock is refused
    and leaves stock and sales untouched.
    """
    pid = make_product(name='Gizmo', stock=3, sell_price=5.0).id
    cid = customer.id

    # valid sale of 2
    resp = user_client.post('/sales/add', data={
        'customer_id': str(cid), 'product_id': str(pid), 'quantity': '2',
    }, follow_redirects=True)
    assert b'Sale recorded as invoice INV-0001' in resp.data
    assert db.session.get(Product, pid).stock == 1

    # attempt to sell 5 (more than stock)
    resp = user_client.post('/sales/add', data={
        'customer_id': str(cid), 'product_id': str(pid), 'quantity': '5',
    }, follow_redirects=True)
    assert b'Not enough stock for Gizmo. Available: 1' in resp.data
    assert db.session.get(Product, pid).stock == 1
    assert Sale.query.count() == 1


def test_sale_requires_customer(user_client, make_product):
    pid = make_product(stock=3).id
    resp = user_client.post('/sales/add', data={'product_id': str(pid), 'quantity': '1'}, follow_redirects=True)
    assert b'Please select a customer' in resp.data
    assert Sale.query.count() == 0


def test_sale_snapshot_and_totals(app, customer, regular_user, make_product):
    product = make_product(name='Latex gloves', stock=200, sell_price=65.0)
    sale = transactions.save_sale(customer, [LineInput(product.id, 3)], regular_user)

    assert sale.invoice_number == 'INV-0001'
    assert sale.customer_name == 'Smile Dental Center'
    assert [(i.product_name, i.quantity, i.price, i.total) for i in sale.items] == [('Latex gloves', 3, 65.0, 195.0)]
    assert (sale.subtotal, sale.discount, sale.total) == (195.0, 0.0, 195.0)


def test_multi_line_sale_is_all_or_nothing(app, customer, regular_user, make_product):
    plenty = make_product(name='Gloves', stock=10)
    scarce = make_product(name='Paper points', stock=1)

    with pytest.raises(transactions.InsufficientStock) as excinfo:
        transactions.save_sale(customer, [LineInput(plenty.id, 5), LineInput(scarce.id, 2)], regular_user)

    assert excinfo.value.product_name == 'Paper points'
    assert excinfo.value.available == 1
    assert db.session.get(Product, plenty.id).stock == 10
    assert db.session.get(Product, scarce.id).stock == 1
    assert Sale.query.count() == 0


def test_repeated_product_lines_are_checked_together(app, customer, regular_user, make_product):
    product = make_product(stock=5)
    with pytest.raises(transactions.InsufficientStock):
        transactions.save_sale(customer, [LineInput(product.id, 3), LineInput(product.id, 3)], regular_user)
    assert db.session.get(Product, product.id).stock == 5


def test_zero_quantity_is_rejected(app, customer, regular_user, make_product):
    product = make_product(stock=5)
    with pytest.raises(transactions.ValidationError):
        transactions.save_sale(customer, [LineInput(product.id, 0)], regular_user)


def test_discount_only_for_admins(app, customer, admin_user, regular_user, make_product):
    product = make_product(stock=10, sell_price=100.0)

    by_user = transactions.save_sale(customer, [LineInput(product.id, 2)], regular_user, discount_percent=10)
    assert (by_user.subtotal, by_user.discount, by_user.total) == (200.0, 0.0, 200.0)

    by_admin = transactions.save_sale(customer, [LineInput(product.id, 2)], admin_user, discount_percent=10)
    assert (by_admin.subtotal, by_admin.discount, by_admin.total) == (200.0, 20.0, 180.0)
    assert by_admin.invoice_number == 'INV-0002'


def test_edit_moves_stock_by_net_change(app, customer, admin_user, make_product):
    gloves = make_product(name='Gloves', stock=10)
    points = make_product(name='Paper points', stock=10)

    sale = transactions.save_sale(customer, [LineInput(gloves.id, 4)], admin_user)
    assert db.session.get(Product, gloves.id).stock == 6

    # shrink the line: 3 units come back
    sale = transactions.save_sale(customer, [LineInput(gloves.id, 1)], admin_user, sale=sale)
    assert db.session.get(Product, gloves.id).stock == 9

    # replace the line with another product: the removed line gives its stock back
    sale = transactions.save_sale(customer, [LineInput(points.id, 2)], admin_user, sale=sale)
    assert db.session.get(Product, gloves.id).stock == 10
    assert db.session.get(Product, points.id).stock == 8
    assert sale.invoice_number == 'INV-0001'
    assert [item.product_name for item in sale.items] == ['Paper points']


def test_edit_beyond_stock_changes_nothing(app, customer, admin_user, make_product):
    product = make_product(stock=5)
    sale = transactions.save_sale(customer, [LineInput(product.id, 2)], admin_user)

    # 2 already sold + 3 left: asking for 6 in total needs 4 more
    with pytest.raises(transactions.InsufficientStock):
        transactions.save_sale(customer, [LineInput(product.id, 6)], admin_user, sale=sale)

    assert db.session.get(Product, product.id).stock == 3
    assert [item.quantity for item in db.session.get(Sale, sale.id).items] == [2]


def test_delete_sale_restores_stock(app, customer, admin_user, make_product):
    product = make_product(stock=10)
    sale = transactions.save_sale(customer, [LineInput(product.id, 4)], admin_user)
    transactions.delete_sale(sale)
    assert db.session.get(Product, product.id).stock == 10
    assert Sale.query.count() == 0


def test_deleting_a_product_keeps_sale_lines(app, customer, admin_user, make_product):
    product = make_product(name='Bonding agent', stock=10)
    sale = transactions.save_sale(customer, [LineInput(product.id, 1)], admin_user)
    db.session.delete(product)
    db.session.commit()

    stored = db.session.get(Sale, sale.id)
    assert [item.product_name for item in stored.items] == ['Bonding agent']
    transactions.delete_sale(stored)
    assert Sale.query.count() == 0


def test_sale_edit_and_delete_are_admin_only(client, regular_user, login, customer, make_product):
    product = make_product(stock=10)
    sale = transactions.save_sale(customer, [LineInput(product.id, 1)], regular_user)
    sale_id = sale.id

    login('clerk')
    assert client.get(f'/sales/{sale_id}').status_code == 200
    assert client.get(f'/sales/{sale_id}/edit').status_code == 403
    assert client.post(f'/sales/{sale_id}/delete', data={'confirm': 'yes'}).status_code == 403


def test_sale_delete_route_needs_confirmation(admin_client, admin_user, customer, make_product):
    pid = make_product(stock=10).id
    sale_id = transactions.save_sale(customer, [LineInput(pid, 4)], admin_user).id

    resp = admin_client.post(f'/sales/{sale_id}/delete', data={}, follow_redirects=True)
    assert b'Deletion was not confirmed' in resp.data
    assert db.session.get(Sale, sale_id) is not None

    resp = admin_client.post(f'/sales/{sale_id}/delete', data={'confirm': 'yes'}, follow_redirects=True)
    assert b'Sale deleted and stock restored' in resp.data
    assert db.session.get(Product, pid).stock == 10


def test_invoice_page_and_export(admin_client, admin_user, customer, make_product):
    pid = make_product(name='Nano composite', stock=10, sell_price=600.0).id
    sale_id = transactions.save_sale(customer, [LineInput(pid, 2)], admin_user, discount_percent=5).id

    resp = admin_client.get(f'/sales/{sale_id}')
    assert b'Invoice INV-0001' in resp.data
    assert b'1200.00' in resp.data
    assert b'1140.00' in resp.data

    resp = admin_client.get('/sales/export')
    text = resp.data.decode('utf-8-sig')
    assert text.split('\n')[0].startswith('id,invoice_number,')
    assert 'Nano composite' in text


def test_deleting_old_sale_does_not_restock_a_newer_product(app, regular_user, customer, make_product):
    make_product(name='Paper points', stock=10)
    discontinued = make_product(name='Old implant', stock=10)
    sale = transactions.save_sale(customer, [LineInput(discontinued.id, 4)], regular_user)
    old_id = discontinued.id
    db.session.delete(discontinued)
    db.session.commit()

    unrelated = make_product(name='Unrelated implant', stock=3)
    assert unrelated.id != old_id

    transactions.delete_sale(sale)
    assert db.session.get(Product, unrelated.id).stock == 3
