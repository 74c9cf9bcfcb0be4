"""
Stock-affecting business flows: sales invoices, purchase orders, purchase
requests and sales orders.

Every flow validates all of its lines before touching stock, then applies the
stock changes and the document write inside a single `transaction()`. Any
exception rolls the whole unit back, so a failed save leaves no partial state.
"""

import re
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from flask import current_app

from models import (
    db,
    Product,
    Sale,
    SaleItem,
    SalesOrder,
    SalesOrderItem,
    PurchaseOrder,
    PurchaseOrderItem,
    PurchaseRequest,
    PurchaseRequestItem,
)

INVOICE_PREFIX = 'INV'
INVOICE_PATTERN = re.compile(r'^INV-(\d+)$')
NEW_PRODUCT_MARKUP = 1.25  # default sell price for products created by a purchase order
NEW_PRODUCT_DESCRIPTION = 'Added automatically from purchase order {order_number}. Please review the details.'
UNASSIGNED_SUPPLIER = 'Not assigned yet'

# (from, to) status pairs a purchase order may move through
PURCHASE_ORDER_TRANSITIONS = {
    (PurchaseOrder.STATUS_PENDING, PurchaseOrder.STATUS_COMPLETED),
    (PurchaseOrder.STATUS_PENDING, PurchaseOrder.STATUS_CANCELLED),
    (PurchaseOrder.STATUS_COMPLETED, PurchaseOrder.STATUS_PENDING),
    (PurchaseOrder.STATUS_COMPLETED, PurchaseOrder.STATUS_CANCELLED),
}


# ==================== ERRORS ====================

class TransactionError(Exception):
    """Base class for business-rule failures that are reported back to the user."""


class ValidationError(TransactionError):
    """Missing selection, malformed line or an edit that is not allowed."""


class InvalidTransition(TransactionError):
    """Requested status change is not allowed from the document's current status."""


class InsufficientStock(TransactionError):
    """A line asks for more units than the product has on hand."""

    def __init__(self, product_name, available, requested):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(f'Not enough stock for {product_name}. Available: {available}')


# ==================== INPUT ====================

@dataclass
class LineInput:
    """One submitted form row: a catalog product with quantity and optional price/reason."""
    product_id: int
    quantity: int
    price: Optional[float] = None
    reason: Optional[str] = None


@contextmanager
def transaction():
    """Commit the session when the block succeeds, roll it back on any exception."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


# ==================== NUMBERING & TOTALS ====================

def _max_suffix(values, pattern):
    highest = 0
    for value in values:
        match = pattern.match(value or '')
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def next_invoice_number(existing=None):
    """
    Next sequential invoice number: highest INV-NNNN suffix plus one,
    zero-padded to 4 digits. Gaps are not refilled (INV-0001, INV-0003 -> INV-0004).
    """
    if existing is None:
        existing = [row[0] for row in db.session.query(Sale.invoice_number).all()]
    return f'{INVOICE_PREFIX}-{_max_suffix(existing, INVOICE_PATTERN) + 1:04d}'


def next_product_code(prefix='PROD'):
    """Next product code for a prefix, e.g. PROD-0007 or NEW-0002."""
    pattern = re.compile(rf'^{re.escape(prefix)}-(\d+)$')
    existing = [row[0] for row in db.session.query(Product.code).filter(Product.code.isnot(None)).all()]
    return f'{prefix}-{_max_suffix(existing, pattern) + 1:04d}'


def timestamp_number(prefix, column):
    """Document number derived from the current epoch milliseconds, bumped on collision."""
    stamp = int(time.time() * 1000)
    while db.session.query(column).filter(column == f'{prefix}-{stamp}').first() is not None:
        stamp += 1
    return f'{prefix}-{stamp}'


def clamp_discount(percent):
    try:
        value = float(percent or 0)
    except (TypeError, ValueError):
        value = 0.0
    return max(0.0, min(100.0, value))


def compute_totals(items, discount_percent=0, allow_discount=False):
    """
    Return (subtotal, discount_amount, total) for priced lines.
    The discount only applies when allow_discount is set (admin users).
    """
    subtotal = sum(item.quantity * item.price for item in items)
    discount = 0.0
    if allow_discount and subtotal > 0:
        discount = subtotal * clamp_discount(discount_percent) / 100
    return subtotal, discount, subtotal - discount


# ==================== SHARED HELPERS ====================

def _load_products(product_ids, lock=False):
    """
    Fetch products by id. With lock=True the rows are re-read from the
    database (overwriting any stale in-session state) and locked for update.
    """
    product_ids = {pid for pid in product_ids if pid is not None}
    if not product_ids:
        return {}
    query = Product.query.filter(Product.id.in_(product_ids))
    if lock:
        query = query.populate_existing().with_for_update()
    return {product.id: product for product in query.all()}


def _build_items(item_cls, lines, products, default_price_attr):
    """Turn submitted lines into priced line-item models, validating each one."""
    if not lines:
        raise ValidationError('Please add at least one item.')
    items = []
    for line in lines:
        product = products.get(line.product_id)
        if product is None:
            raise ValidationError(f'Unknown product #{line.product_id}.')
        if line.quantity is None or line.quantity <= 0:
            raise ValidationError(f'Quantity for {product.name} must be positive.')
        price = line.price if line.price is not None else getattr(product, default_price_attr)
        if price < 0:
            raise ValidationError(f'Price for {product.name} cannot be negative.')
        item = item_cls()
        item.set_product(product, price)
        item.set_quantity(line.quantity)
        items.append(item)
    return items


def _quantities(items):
    """Total quantity per product id across a document's lines."""
    totals = defaultdict(int)
    for item in items:
        if item.product_id is not None:
            totals[item.product_id] += item.quantity
    return dict(totals)


def _line_name(items, product_id):
    for item in items:
        if item.product_id == product_id:
            return item.product_name
    return f'#{product_id}'


# ==================== SALES ====================

def save_sale(customer, lines, user, discount_percent=0, notes=None, sale=None):
    """
    Create a sale, or replace the lines of an existing one.

    Stock moves by the net change per product between the sale's previous
    lines and the new ones, so shrinking or removing a line frees stock.
    All positive changes are checked against current stock before any write.
    """
    if customer is None:
        raise ValidationError('Please select a customer and add at least one item.')

    with transaction():
        old_quantities = _quantities(sale.items) if sale is not None else {}
        products = _load_products({line.product_id for line in lines} | set(old_quantities), lock=True)
        items = _build_items(SaleItem, lines, products, 'sell_price')
        new_quantities = _quantities(items)

        deltas = {}
        for product_id in set(old_quantities) | set(new_quantities):
            delta = new_quantities.get(product_id, 0) - old_quantities.get(product_id, 0)
            if delta:
                deltas[product_id] = delta

        for product_id, delta in deltas.items():
            product = products.get(product_id)
            if product is not None and delta > 0 and product.stock < delta:
                raise InsufficientStock(product.name, product.stock, delta)

        for product_id, delta in deltas.items():
            product = products.get(product_id)
            # lines of products deleted since the sale was made have nothing to give back to
            if product is not None:
                product.stock -= delta

        allow_discount = user is not None and user.is_admin
        subtotal, discount, total = compute_totals(items, discount_percent, allow_discount)

        if sale is None:
            sale = Sale(invoice_number=next_invoice_number(), date=datetime.now())
            db.session.add(sale)
        sale.customer_id = customer.id
        sale.customer_name = customer.name
        sale.items = items
        sale.subtotal = subtotal
        sale.discount = discount
        sale.total = total
        sale.notes = (notes or '').strip() or None

    current_app.logger.info('Sale %s saved, stock deltas %s', sale.invoice_number, deltas)
    return sale


def delete_sale(sale):
    """Return the sold quantities to stock and remove the sale."""
    invoice_number = sale.invoice_number
    with transaction():
        quantities = _quantities(sale.items)
        products = _load_products(quantities, lock=True)
        for product_id, quantity in quantities.items():
            product = products.get(product_id)
            if product is not None:
                product.stock += quantity
        db.session.delete(sale)
    current_app.logger.info('Sale %s deleted, restocked %s', invoice_number, quantities)


# ==================== PURCHASE ORDERS ====================

def save_purchase_order(supplier, lines, notes=None, order=None):
    """Create or edit a purchase order. Saving never touches stock."""
    if supplier is None:
        raise ValidationError('Please select a supplier and add at least one item.')
    if order is not None and order.status == PurchaseOrder.STATUS_COMPLETED:
        raise ValidationError('Completed orders cannot be edited. Move the order back to pending first.')

    with transaction():
        products = _load_products({line.product_id for line in lines})
        items = _build_items(PurchaseOrderItem, lines, products, 'purchase_price')
        if order is None:
            order = PurchaseOrder(
                order_number=timestamp_number('PO', PurchaseOrder.order_number),
                date=datetime.now(),
                status=PurchaseOrder.STATUS_PENDING,
            )
            db.session.add(order)
        order.supplier_id = supplier.id
        order.supplier_name = supplier.name
        order.items = items
        order.total = sum(item.total for item in items)
        order.notes = (notes or '').strip() or None
    return order


def _receive_stock(order):
    """Add ordered quantities to stock, creating catalog entries for unknown products."""
    products = _load_products({item.product_id for item in order.items}, lock=True)
    created = {}
    for item in order.items:
        product = products.get(item.product_id)
        if product is None:
            key = item.product_id if item.product_id is not None else item.product_name
            product = created.get(key)
        if product is None:
            product = Product(
                code=next_product_code('NEW'),
                name=item.product_name or 'Unnamed product',
                description=NEW_PRODUCT_DESCRIPTION.format(order_number=order.order_number),
                purchase_price=item.price,
                sell_price=round(item.price * NEW_PRODUCT_MARKUP, 2),
                stock=0,
            )
            db.session.add(product)
            db.session.flush()
            created[key] = product
            current_app.logger.warning(
                'Order %s: created product %s (%s) for an unknown line; needs review',
                order.order_number, product.code, product.name,
            )
        product.stock += item.quantity
        item.product_id = product.id
    return list(created.values())


def _reverse_stock(order):
    """
    Take received quantities back out of stock, never going below zero.
    Returns the names of products whose stock was clamped.
    """
    quantities = _quantities(order.items)
    products = _load_products(quantities, lock=True)
    clamped = []
    for product_id, quantity in quantities.items():
        product = products.get(product_id)
        if product is None:
            continue
        if product.stock < quantity:
            current_app.logger.warning(
                'Order %s: reversing %s units of %s but only %s in stock; clamping to zero',
                order.order_number, quantity, product.name, product.stock,
            )
            clamped.append(product.name)
        product.stock = max(0, product.stock - quantity)
    return clamped


@dataclass
class StatusChange:
    """Side effects of a purchase order status change that the user should review."""
    created: list = field(default_factory=list)  # products created for unknown lines
    clamped: list = field(default_factory=list)  # names of products reversed to zero stock


def set_purchase_order_status(order, status):
    """
    Move a purchase order to a new status.

    pending -> completed receives stock; completed -> pending/cancelled
    reverses it. Returns a StatusChange with the products created on
    completion and the products clamped to zero on reversal.
    """
    if status not in PurchaseOrder.STATUSES:
        raise ValidationError(f'Unknown status: {status}')
    if status == order.status:
        return StatusChange()
    if (order.status, status) not in PURCHASE_ORDER_TRANSITIONS:
        raise InvalidTransition(f'Order {order.order_number} cannot move from {order.status} to {status}.')

    change = StatusChange()
    previous = order.status
    with transaction():
        if status == PurchaseOrder.STATUS_COMPLETED:
            change.created = _receive_stock(order)
        elif previous == PurchaseOrder.STATUS_COMPLETED:
            change.clamped = _reverse_stock(order)
        order.status = status
    current_app.logger.info('Order %s: %s -> %s', order.order_number, previous, status)
    return change


def delete_purchase_order(order, confirm_stock_reversal=False):
    """
    Delete an order; a completed one gives its quantities back first (explicitly confirmed).
    Returns the names of products whose stock was clamped to zero.
    """
    completed = order.status == PurchaseOrder.STATUS_COMPLETED
    if completed and not confirm_stock_reversal:
        raise ValidationError(
            'This order is completed. Deleting it will remove its quantities from stock; please confirm.'
        )
    order_number = order.order_number
    clamped = []
    with transaction():
        if completed:
            clamped = _reverse_stock(order)
        PurchaseRequest.query.filter_by(linked_order_id=order.id).update({'linked_order_id': None})
        db.session.delete(order)
    current_app.logger.info('Order %s deleted (stock reversed: %s)', order_number, completed)
    return clamped


# ==================== PURCHASE REQUESTS ====================

def create_purchase_request(user, lines):
    if not lines or any(line.quantity is None or line.quantity <= 0 for line in lines):
        raise ValidationError('Please add valid items to the request.')

    with transaction():
        products = _load_products({line.product_id for line in lines})
        purchase_request = PurchaseRequest(
            request_number=timestamp_number('PR', PurchaseRequest.request_number),
            date=datetime.now(),
            requested_by=user.username,
            status=PurchaseRequest.STATUS_PENDING,
        )
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                raise ValidationError('Please add valid items to the request.')
            item = PurchaseRequestItem()
            item.set_product(product)
            item.set_quantity(line.quantity)
            item.set_reason(line.reason)
            purchase_request.items.append(item)
        db.session.add(purchase_request)
    return purchase_request


def approve_purchase_request(purchase_request):
    """
    Approve a pending request by spawning a pending purchase order with the
    requested items at current purchase prices. Stock is not touched.
    """
    if purchase_request.status != PurchaseRequest.STATUS_PENDING:
        raise InvalidTransition(f'Request {purchase_request.request_number} is already {purchase_request.status}.')

    with transaction():
        products = _load_products({item.product_id for item in purchase_request.items})
        order = PurchaseOrder(
            order_number=timestamp_number('PO', PurchaseOrder.order_number),
            date=datetime.now(),
            supplier_id=None,
            supplier_name=UNASSIGNED_SUPPLIER,
            status=PurchaseOrder.STATUS_PENDING,
            notes=f'Created from purchase request {purchase_request.request_number}',
        )
        for requested in purchase_request.items:
            product = products.get(requested.product_id)
            item = PurchaseOrderItem(product_id=requested.product_id, product_name=requested.product_name)
            item.set_quantity(requested.quantity)
            item.set_price(product.purchase_price if product is not None else 0.0)
            order.items.append(item)
        order.total = sum(item.total for item in order.items)
        db.session.add(order)
        db.session.flush()

        purchase_request.status = PurchaseRequest.STATUS_APPROVED
        purchase_request.linked_order_id = order.id
        purchase_request.linked_order_number = order.order_number

    current_app.logger.info('Request %s approved as order %s', purchase_request.request_number, order.order_number)
    return order


def reject_purchase_request(purchase_request):
    if purchase_request.status != PurchaseRequest.STATUS_PENDING:
        raise InvalidTransition(f'Request {purchase_request.request_number} is already {purchase_request.status}.')
    with transaction():
        purchase_request.status = PurchaseRequest.STATUS_REJECTED


# ==================== SALES ORDERS ====================

def save_sales_order(customer, lines, user, discount_percent=0, notes=None, order=None):
    """Create or edit a pending sales order. No stock is reserved."""
    if customer is None:
        raise ValidationError('Please select a customer and add at least one item.')
    if order is not None and order.status != SalesOrder.STATUS_PENDING:
        raise InvalidTransition('Only pending sales orders can be edited.')

    with transaction():
        products = _load_products({line.product_id for line in lines})
        items = _build_items(SalesOrderItem, lines, products, 'sell_price')
        allow_discount = user is not None and user.is_admin
        subtotal, discount, total = compute_totals(items, discount_percent, allow_discount)
        if order is None:
            order = SalesOrder(
                order_number=timestamp_number('SO', SalesOrder.order_number),
                date=datetime.now(),
                status=SalesOrder.STATUS_PENDING,
            )
            db.session.add(order)
        order.customer_id = customer.id
        order.customer_name = customer.name
        order.items = items
        order.subtotal = subtotal
        order.discount = discount
        order.total = total
        order.notes = (notes or '').strip() or None
    return order


def cancel_sales_order(order):
    if order.status != SalesOrder.STATUS_PENDING:
        raise InvalidTransition('Only pending sales orders can be cancelled.')
    with transaction():
        order.status = SalesOrder.STATUS_CANCELLED


def convert_sales_order(order):
    """
    Turn a pending sales order into an invoice.

    Products and existing invoice numbers are re-read from the database at
    conversion time. Any shortage aborts with no change to products, sales or
    the order; otherwise the sale, the stock decrements and the 'invoiced'
    status are committed together.
    """
    with transaction():
        db.session.refresh(order)
        if order.status != SalesOrder.STATUS_PENDING:
            raise InvalidTransition('Only pending sales orders can be converted to an invoice.')

        quantities = _quantities(order.items)
        products = _load_products(quantities, lock=True)
        for product_id, quantity in quantities.items():
            product = products.get(product_id)
            if product is None:
                raise InsufficientStock(_line_name(order.items, product_id), 0, quantity)
            if product.stock < quantity:
                raise InsufficientStock(product.name, product.stock, quantity)

        existing = [row[0] for row in db.session.query(Sale.invoice_number).all()]
        sale = Sale(
            invoice_number=next_invoice_number(existing),
            date=datetime.now(),
            customer_id=order.customer_id,
            customer_name=order.customer_name,
            subtotal=order.subtotal,
            discount=order.discount,
            total=order.total,
            notes=f'Created from sales order {order.order_number}',
        )
        for ordered in order.items:
            sale.items.append(SaleItem(
                product_id=ordered.product_id,
                product_name=ordered.product_name,
                quantity=ordered.quantity,
                price=ordered.price,
                total=ordered.total,
            ))
        for product_id, quantity in quantities.items():
            products[product_id].stock -= quantity
        order.status = SalesOrder.STATUS_INVOICED
        db.session.add(sale)

    current_app.logger.info('Sales order %s invoiced as %s', order.order_number, sale.invoice_number)
    return sale
