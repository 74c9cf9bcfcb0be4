# Demo data loaded by the `flask seed` command
# Each table is only filled when it is empty, so running the command twice is harmless.

from datetime import date, timedelta

from models import db, Product, Customer, Supplier, User, ROLE_ADMIN, ROLE_USER

# expiry is given in days from today (None = does not expire)
DEMO_PRODUCTS = [
    {'code': 'D-KIT-001', 'name': 'Dental examination kit',
     'description': 'Basic examination set with mirror, explorer and tweezers.',
     'purchase_price': 150, 'sell_price': 250, 'stock': 50, 'expiry': None},
    {'code': 'COMP-N-010', 'name': 'Nano composite filling',
     'description': 'High quality composite for durable aesthetic fillings.',
     'purchase_price': 450, 'sell_price': 600, 'stock': 30, 'expiry': 365},
    {'code': 'GLV-L-100', 'name': 'Latex examination gloves (100 pcs)',
     'description': 'Box of single-use, non-sterile latex gloves.',
     'purchase_price': 40, 'sell_price': 65, 'stock': 200, 'expiry': 730},
    {'code': 'IMP-S-025', 'name': 'Silicone impression material',
     'description': 'High precision impression material for crowns and bridges.',
     'purchase_price': 800, 'sell_price': 1100, 'stock': 15, 'expiry': 25},
    {'code': 'GPC-001', 'name': 'Gutta-percha paper points',
     'description': 'Absorbent paper points used in root canal treatment.',
     'purchase_price': 90, 'sell_price': 150, 'stock': 8, 'expiry': -10},
]

DEMO_CUSTOMERS = [
    {'name': 'Dr. Ahmed Mahmoud Clinic', 'phone': '01234567890', 'address': '123 El Nasr St, Cairo'},
    {'name': 'Smile Dental Center', 'phone': '01098765432', 'address': '45 El Gomhoreya St, Alexandria'},
]

DEMO_SUPPLIERS = [
    {'name': 'United Medical Equipment Co.', 'phone': '0223344556', 'address': 'Industrial Zone, Nasr City'},
    {'name': 'Dental Supplies Importers', 'phone': '0345566778', 'address': 'Alexandria Port, Alexandria'},
]

# username, password, role
DEMO_USERS = [
    ('admin', 'password', ROLE_ADMIN),
    ('user', 'password', ROLE_USER),
]


def seed_database(today=None):
    """Insert the demo records into empty tables. Returns the number of rows added per table."""
    today = today or date.today()
    added = {'products': 0, 'customers': 0, 'suppliers': 0, 'users': 0}

    if Product.query.count() == 0:
        for data in DEMO_PRODUCTS:
            fields = {key: value for key, value in data.items() if key != 'expiry'}
            if data['expiry'] is not None:
                fields['expiry_date'] = today + timedelta(days=data['expiry'])
            db.session.add(Product(**fields))
            added['products'] += 1

    if Customer.query.count() == 0:
        for data in DEMO_CUSTOMERS:
            db.session.add(Customer(**data))
            added['customers'] += 1

    if Supplier.query.count() == 0:
        for data in DEMO_SUPPLIERS:
            db.session.add(Supplier(**data))
            added['suppliers'] += 1

    if User.query.count() == 0:
        for username, password, role in DEMO_USERS:
            user = User(username=username, role=role)
            user.set_password(password)
            db.session.add(user)
            added['users'] += 1

    db.session.commit()
    return added
