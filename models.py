# Database models for the dental supplies inventory application
# Every named collection of the system (products, customers, suppliers, sales,
# sales orders, purchase orders, purchase requests, users) lives in its own table.

from datetime import date, datetime

from flask_sqlalchemy import SQLAlchemy  # ORM for database operations
from werkzeug.security import generate_password_hash, check_password_hash  # Password security

# Initialize SQLAlchemy database instance
# This will be configured and bound to the Flask app in create_app()
db = SQLAlchemy()

ROLE_ADMIN = 'admin'
ROLE_USER = 'user'

LOW_STOCK_THRESHOLD = 10  # Products below this (and above zero) count as low stock
EXPIRY_WARNING_DAYS = 30  # Days before expiry when a product is flagged


def _iso(value):
    """Serialize dates/datetimes for JSON output, leaving other values untouched."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


# ==================== USERS ====================

class User(db.Model):
    """
    User model for authentication and role-based access.
    Passwords are only ever stored as salted hashes.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)  # 'admin' or 'user'

    def set_password(self, password):
        """Hash and store the user's password."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Return True if the password matches the stored hash."""
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN

    def to_dict(self):
        # password_hash never leaves the model
        return {'id': self.id, 'username': self.username, 'role': self.role}

    def __repr__(self):
        return f'<User {self.username}>'


# ==================== CATALOG ====================

class Product(db.Model):
    """
    Catalog entry. `stock` is the one field every downstream flow mutates:
    sales decrement it, completed purchase orders increment it.
    """
    __tablename__ = 'products'
    # ids are never reused; line items keep a deleted product's id without a foreign key
    __table_args__ = {'sqlite_autoincrement': True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), unique=True, index=True)  # PROD-0001, NEW-0001 ...
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False, default='')
    purchase_price = db.Column(db.Float, nullable=False, default=0.0)
    sell_price = db.Column(db.Float, nullable=False, default=0.0)
    stock = db.Column(db.Integer, nullable=False, default=0)  # no floor is enforced at the column level
    expiry_date = db.Column(db.Date, nullable=True)

    def expiry_status(self, today=None, warning_days=EXPIRY_WARNING_DAYS):
        """Return 'expired', 'expiring_soon' or 'ok' for this product."""
        if self.expiry_date is None:
            return 'ok'
        today = today or date.today()
        days_left = (self.expiry_date - today).days
        if days_left <= 0:
            return 'expired'
        if days_left <= warning_days:
            return 'expiring_soon'
        return 'ok'

    def is_low_stock(self, threshold=LOW_STOCK_THRESHOLD):
        return 0 < self.stock < threshold

    def to_dict(self, include_purchase_price=True):
        data = {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'description': self.description,
            'purchase_price': self.purchase_price,
            'sell_price': self.sell_price,
            'stock': self.stock,
            'expiry_date': _iso(self.expiry_date),
        }
        if not include_purchase_price:
            data.pop('purchase_price')
        return data

    def __repr__(self):
        return f'<Product {self.code} {self.name}>'


class ContactMixin:
    """Shared shape of customers and suppliers: static reference data."""
    __table_args__ = {'sqlite_autoincrement': True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    phone = db.Column(db.String(50), nullable=False, default='')
    address = db.Column(db.String(255), nullable=False, default='')

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'phone': self.phone, 'address': self.address}


class Customer(ContactMixin, db.Model):
    __tablename__ = 'customers'


class Supplier(ContactMixin, db.Model):
    __tablename__ = 'suppliers'


# ==================== LINE ITEMS ====================

class LineItemMixin:
    """
    One (product, quantity, price) line with its computed total.

    product_id is a snapshot reference (no foreign key): documents keep their
    lines even if the product is later deleted from the catalog.
    Fields are changed through the explicit setters so `total` never drifts.
    """
    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, nullable=True, index=True)
    product_name = db.Column(db.String(200), nullable=False, default='')
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Float, nullable=False, default=0.0)
    total = db.Column(db.Float, nullable=False, default=0.0)

    def _recompute(self):
        self.total = (self.quantity or 0) * (self.price or 0.0)

    def set_product(self, product, price=None):
        """Point the line at a product, snapshotting its name and (optionally) a price."""
        self.product_id = product.id
        self.product_name = product.name
        if price is not None:
            self.price = float(price)
        self._recompute()

    def set_quantity(self, quantity):
        self.quantity = int(quantity)
        self._recompute()

    def set_price(self, price):
        self.price = float(price)
        self._recompute()

    def to_dict(self):
        return {
            'product_id': self.product_id,
            'product_name': self.product_name,
            'quantity': self.quantity,
            'price': self.price,
            'total': self.total,
        }


class SaleItem(LineItemMixin, db.Model):
    __tablename__ = 'sale_items'
    sale_id = db.Column(db.Integer, db.ForeignKey('sales.id', ondelete='CASCADE'), nullable=False, index=True)


class SalesOrderItem(LineItemMixin, db.Model):
    __tablename__ = 'sales_order_items'
    sales_order_id = db.Column(
        db.Integer, db.ForeignKey('sales_orders.id', ondelete='CASCADE'), nullable=False, index=True
    )


class PurchaseOrderItem(LineItemMixin, db.Model):
    __tablename__ = 'purchase_order_items'
    order_id = db.Column(
        db.Integer, db.ForeignKey('purchase_orders.id', ondelete='CASCADE'), nullable=False, index=True
    )


class PurchaseRequestItem(db.Model):
    """Requested (product, quantity) with an optional reason; carries no price."""
    __tablename__ = 'purchase_request_items'

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey('purchase_requests.id', ondelete='CASCADE'), nullable=False, index=True
    )
    product_id = db.Column(db.Integer, nullable=True)
    product_name = db.Column(db.String(200), nullable=False, default='')
    quantity = db.Column(db.Integer, nullable=False, default=1)
    reason = db.Column(db.String(255), nullable=True)

    def set_product(self, product):
        self.product_id = product.id
        self.product_name = product.name

    def set_quantity(self, quantity):
        self.quantity = int(quantity)

    def set_reason(self, reason):
        self.reason = (reason or '').strip() or None

    def to_dict(self):
        return {
            'product_id': self.product_id,
            'product_name': self.product_name,
            'quantity': self.quantity,
            'reason': self.reason,
        }


# ==================== DOCUMENTS ====================

class Sale(db.Model):
    """Persisted invoice. Line items are a snapshot of names/prices at sale time."""
    __tablename__ = 'sales'

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(30), unique=True, nullable=False, index=True)  # INV-0001 ...
    date = db.Column(db.DateTime, nullable=False, default=datetime.now, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True)
    customer_name = db.Column(db.String(200), nullable=False, default='')
    subtotal = db.Column(db.Float, nullable=False, default=0.0)
    discount = db.Column(db.Float, nullable=False, default=0.0)  # discount amount, not percentage
    total = db.Column(db.Float, nullable=False, default=0.0)
    notes = db.Column(db.Text, nullable=True)

    items = db.relationship(
        'SaleItem', cascade='all, delete-orphan', order_by='SaleItem.id', lazy='selectin'
    )

    @property
    def discount_percentage(self):
        if not self.subtotal:
            return 0.0
        return self.discount / self.subtotal * 100

    def to_dict(self):
        return {
            'id': self.id,
            'invoice_number': self.invoice_number,
            'date': _iso(self.date),
            'customer_id': self.customer_id,
            'customer_name': self.customer_name,
            'items': [item.to_dict() for item in self.items],
            'subtotal': self.subtotal,
            'discount': self.discount,
            'total': self.total,
            'notes': self.notes,
        }


class SalesOrder(db.Model):
    """Pending customer order. Holds no stock reservation until invoiced."""
    __tablename__ = 'sales_orders'

    STATUS_PENDING = 'pending'
    STATUS_INVOICED = 'invoiced'
    STATUS_CANCELLED = 'cancelled'
    STATUSES = (STATUS_PENDING, STATUS_INVOICED, STATUS_CANCELLED)

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(30), unique=True, nullable=False, index=True)  # SO-<epoch ms>
    date = db.Column(db.DateTime, nullable=False, default=datetime.now, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True)
    customer_name = db.Column(db.String(200), nullable=False, default='')
    subtotal = db.Column(db.Float, nullable=False, default=0.0)
    discount = db.Column(db.Float, nullable=False, default=0.0)
    total = db.Column(db.Float, nullable=False, default=0.0)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    notes = db.Column(db.Text, nullable=True)

    items = db.relationship(
        'SalesOrderItem', cascade='all, delete-orphan', order_by='SalesOrderItem.id', lazy='selectin'
    )

    @property
    def discount_percentage(self):
        if not self.subtotal:
            return 0.0
        return self.discount / self.subtotal * 100

    def to_dict(self):
        return {
            'id': self.id,
            'order_number': self.order_number,
            'date': _iso(self.date),
            'customer_id': self.customer_id,
            'customer_name': self.customer_name,
            'items': [item.to_dict() for item in self.items],
            'subtotal': self.subtotal,
            'discount': self.discount,
            'total': self.total,
            'status': self.status,
            'notes': self.notes,
        }


class PurchaseOrder(db.Model):
    """Order to a supplier. Completing it receives the ordered quantities into stock."""
    __tablename__ = 'purchase_orders'
    __table_args__ = {'sqlite_autoincrement': True}

    STATUS_PENDING = 'pending'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'
    STATUSES = (STATUS_PENDING, STATUS_COMPLETED, STATUS_CANCELLED)

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(30), unique=True, nullable=False, index=True)  # PO-<epoch ms>
    date = db.Column(db.DateTime, nullable=False, default=datetime.now, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id', ondelete='SET NULL'), nullable=True)
    supplier_name = db.Column(db.String(200), nullable=False, default='')
    total = db.Column(db.Float, nullable=False, default=0.0)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    notes = db.Column(db.Text, nullable=True)

    items = db.relationship(
        'PurchaseOrderItem', cascade='all, delete-orphan', order_by='PurchaseOrderItem.id', lazy='selectin'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'order_number': self.order_number,
            'date': _iso(self.date),
            'supplier_id': self.supplier_id,
            'supplier_name': self.supplier_name,
            'items': [item.to_dict() for item in self.items],
            'total': self.total,
            'status': self.status,
            'notes': self.notes,
        }


class PurchaseRequest(db.Model):
    """Internal ask to buy items; approval spawns a pending purchase order."""
    __tablename__ = 'purchase_requests'

    STATUS_PENDING = 'pending'
    STATUS_APPROVED = 'approved'
    STATUS_REJECTED = 'rejected'
    STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)

    id = db.Column(db.Integer, primary_key=True)
    request_number = db.Column(db.String(30), unique=True, nullable=False, index=True)  # PR-<epoch ms>
    date = db.Column(db.DateTime, nullable=False, default=datetime.now, index=True)
    requested_by = db.Column(db.String(80), nullable=False, index=True)  # username snapshot
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    linked_order_id = db.Column(
        db.Integer, db.ForeignKey('purchase_orders.id', ondelete='SET NULL'), nullable=True
    )
    linked_order_number = db.Column(db.String(30), nullable=True)

    items = db.relationship(
        'PurchaseRequestItem', cascade='all, delete-orphan', order_by='PurchaseRequestItem.id', lazy='selectin'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'request_number': self.request_number,
            'date': _iso(self.date),
            'requested_by': self.requested_by,
            'items': [item.to_dict() for item in self.items],
            'status': self.status,
            'linked_order_id': self.linked_order_id,
            'linked_order_number': self.linked_order_number,
        }


# Collection name -> model, as exposed by the collections API and CSV exports
COLLECTIONS = {
    'products': Product,
    'customers': Customer,
    'suppliers': Supplier,
    'sales': Sale,
    'sales-orders': SalesOrder,
    'orders': PurchaseOrder,
    'purchase-requests': PurchaseRequest,
    'users': User,
}
