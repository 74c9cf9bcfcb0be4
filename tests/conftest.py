"""
Shared test fixtures.

Every test gets a fresh application bound to an in-memory SQLite database.
The schema is created inside an application context that stays pushed for
the whole test, so tests can query models directly between requests.
"""

import json
from datetime import datetime

import pytest

import descriptions
from app import create_app, db
from models import User, Product, Customer, Supplier, Sale, SaleItem, ROLE_ADMIN, ROLE_USER


@pytest.fixture
def app():
    """
    Create test Flask application with in-memory database.
    The description service credential is cleared so no test can reach the network.
    """
    app = create_app({
        'TESTING': True,  # Enable Flask testing mode
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',  # Isolated in-memory database
        'SECRET_KEY': 'test-secret',  # Fixed secret for consistent sessions
        'GEMINI_API_KEY': None,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Test client for HTTP requests."""
    return app.test_client()


def _create_user(username, role, password='password'):
    user = User(username=username, role=role)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_user(app):
    return _create_user('admin', ROLE_ADMIN)


@pytest.fixture
def regular_user(app):
    return _create_user('clerk', ROLE_USER)


@pytest.fixture
def login(client):
    """Log the test client in as the given user (replacing any previous session)."""
    def do_login(username, password='password'):
        return client.post('/login', data={'username': username, 'password': password}, follow_redirects=True)
    return do_login


@pytest.fixture
def admin_client(client, admin_user, login):
    login('admin')
    return client


@pytest.fixture
def user_client(client, regular_user, login):
    login('clerk')
    return client


@pytest.fixture
def make_product(app):
    """Factory for catalog products with unique test codes."""
    counter = iter(range(1, 10000))

    def factory(name='Nano composite', stock=10, purchase_price=50.0, sell_price=80.0, code=None, expiry_date=None):
        product = Product(
            code=code or f'T-{next(counter):04d}',
            name=name,
            description='',
            purchase_price=purchase_price,
            sell_price=sell_price,
            stock=stock,
            expiry_date=expiry_date,
        )
        db.session.add(product)
        db.session.commit()
        return product

    return factory


@pytest.fixture
def customer(app):
    record = Customer(name='Smile Dental Center', phone='01098765432', address='Alexandria')
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture
def supplier(app):
    record = Supplier(name='United Medical Equipment Co.', phone='0223344556', address='Nasr City')
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture
def make_sale(app):
    """Insert a stored sale directly, bypassing the stock flow."""
    def factory(invoice_number, total=100.0, date=None, customer_name='Walk-in', items=()):
        sale = Sale(
            invoice_number=invoice_number,
            date=date or datetime.now(),
            customer_name=customer_name,
            subtotal=total,
            total=total,
        )
        for product_id, name, quantity, price in items:
            sale.items.append(SaleItem(
                product_id=product_id, product_name=name, quantity=quantity, price=price, total=quantity * price,
            ))
        db.session.add(sale)
        db.session.commit()
        return sale

    return factory


class FakeResponse:
    """Minimal stand-in for the object urlopen returns."""

    def __init__(self, payload):
        self._body = json.dumps(payload).encode('utf-8')

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


@pytest.fixture
def fake_gemini(monkeypatch):
    """
    Replace the outbound HTTP call of the description service.
    Call the fixture with `text=` for a successful reply or `error=` to raise;
    it returns the list of captured requests.
    """
    def install(text='', error=None):
        calls = []

        def fake_urlopen(request, timeout=None):
            calls.append({
                'url': request.full_url,
                'body': json.loads(request.data.decode('utf-8')),
                'headers': dict(request.header_items()),
                'timeout': timeout,
            })
            if error is not None:
                raise error
            return FakeResponse({'candidates': [{'content': {'parts': [{'text': text}]}}]})

        monkeypatch.setattr(descriptions, 'urlopen', fake_urlopen)
        return calls

    return install
