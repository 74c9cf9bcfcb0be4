# Flask Dental Supplies Inventory & Sales Administration
# This file contains the application factory and all routes.
# Models live in models.py, stock-affecting business rules in transactions.py.

# Import necessary Flask components for web application functionality
from flask import Flask, render_template, request, redirect, url_for, flash, session, abort, jsonify
from flask import g  # Application context global object
from functools import wraps
from itertools import zip_longest
from datetime import date, datetime
import os  # Operating system interface

import click  # CLI commands registered on app.cli

from models import (
    db,
    User,
    Product,
    Customer,
    Supplier,
    Sale,
    SalesOrder,
    PurchaseOrder,
    PurchaseRequest,
    COLLECTIONS,
    ROLE_ADMIN,
    ROLE_USER,
    LOW_STOCK_THRESHOLD,
    EXPIRY_WARNING_DAYS,
)
import transactions
from transactions import LineInput, TransactionError, ValidationError
from reporting import monthly_totals, sales_detail
from csv_export import csv_response
from descriptions import generate_description, DescriptionError
from seed_data import seed_database

MIN_PASSWORD_LENGTH = 6

# Stock filter values for the products page (also set by the header's low-stock link)
STOCK_FILTERS = {
    'all': 'All products',
    'in_stock': 'In stock',
    'low_stock': 'Low stock',
    'out_of_stock': 'Out of stock',
}

# Sidebar navigation; admin_only items are hidden from regular users
NAV_ITEMS = [
    {'id': 'dashboard', 'label': 'Dashboard', 'endpoint': 'home', 'admin_only': False},
    {'id': 'products', 'label': 'Products', 'endpoint': 'products', 'admin_only': False},
    {'id': 'sales', 'label': 'Sales', 'endpoint': 'sales', 'admin_only': False},
    {'id': 'sales-orders', 'label': 'Sales Orders', 'endpoint': 'sales_orders', 'admin_only': False},
    {'id': 'customers', 'label': 'Customers', 'endpoint': 'customers', 'admin_only': False},
    {'id': 'suppliers', 'label': 'Suppliers', 'endpoint': 'suppliers', 'admin_only': False},
    {'id': 'orders', 'label': 'Purchase Orders', 'endpoint': 'orders', 'admin_only': True},
    {'id': 'purchase-requests', 'label': 'Purchase Requests', 'endpoint': 'purchase_requests', 'admin_only': False},
    {'id': 'reports', 'label': 'Reports', 'endpoint': 'reports', 'admin_only': False},
    {'id': 'users', 'label': 'Users', 'endpoint': 'users', 'admin_only': True},
    {'id': 'about', 'label': 'About', 'endpoint': 'about', 'admin_only': False},
]


def visible_nav_items(user):
    """Navigation entries the given user may open."""
    if user is None:
        return []
    return [item for item in NAV_ITEMS if user.is_admin or not item['admin_only']]


# ==================== FORM PARSING HELPERS ====================

def _parse_int(value, default=None):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _parse_float(value, default=None):
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def _parse_date(value):
    """Parse a YYYY-MM-DD form value; blank or malformed input gives None."""
    try:
        return datetime.strptime((value or '').strip(), '%Y-%m-%d').date()
    except ValueError:
        return None


def parse_lines(form, with_price=False, with_reason=False):
    """
    Read the repeated product_id / quantity / price / reason fields of a
    multi-line form. Rows without a product are ignored.
    """
    rows = zip_longest(
        form.getlist('product_id'), form.getlist('quantity'),
        form.getlist('price'), form.getlist('reason'), fillvalue='',
    )
    lines = []
    for raw_id, raw_quantity, raw_price, raw_reason in rows:
        if not raw_id.strip():
            continue
        product_id = _parse_int(raw_id)
        if product_id is None:
            raise ValidationError('Invalid product selection.')
        quantity = _parse_int(raw_quantity)
        if quantity is None or quantity <= 0:
            raise ValidationError('Quantities must be positive whole numbers.')
        price = None
        if with_price and raw_price.strip():
            price = _parse_float(raw_price)
            if price is None or price < 0:
                raise ValidationError('Prices must be non-negative numbers.')
        reason = raw_reason if with_reason else None
        lines.append(LineInput(product_id, quantity, price, reason))
    return lines


def form_rows(form=None, items=None, blank=3):
    """Rows for re-rendering a multi-line form, padded with blank rows."""
    rows = []
    if form is not None:
        for product_id, quantity, price, reason in zip_longest(
            form.getlist('product_id'), form.getlist('quantity'),
            form.getlist('price'), form.getlist('reason'), fillvalue='',
        ):
            if product_id.strip():
                rows.append({'product_id': product_id, 'quantity': quantity, 'price': price, 'reason': reason})
    elif items:
        for item in items:
            rows.append({
                'product_id': item.product_id,
                'quantity': item.quantity,
                'price': getattr(item, 'price', ''),
                'reason': getattr(item, 'reason', '') or '',
            })
    rows.extend({'product_id': '', 'quantity': '', 'price': '', 'reason': ''} for _ in range(blank))
    return rows


def confirmed(field='confirm'):
    return request.form.get(field) == 'yes'


# ==================== APPLICATION FACTORY ====================

def create_app(test_config=None):
    """
    Application factory function that creates and configures the Flask application.

    Args:
        test_config (dict, optional): Configuration dictionary for testing.
                                    If provided, overrides default config settings.

    Returns:
        Flask: Configured Flask application instance ready to run.
    """
    app = Flask(__name__, template_folder='templates')

    # ==================== APPLICATION CONFIGURATION ====================
    # SQLite database is stored in the project root unless DATABASE_URL is set
    project_root = os.path.abspath(os.path.dirname(__file__))
    db_path = os.path.join(project_root, 'dental_inventory.db')
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('FLASK_SECRET', 'dev-secret'),  # Secret key for sessions (use env var in production)
        SQLALCHEMY_DATABASE_URI=os.environ.get('DATABASE_URL', f"sqlite:///{db_path}"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        GEMINI_API_KEY=os.environ.get('GEMINI_API_KEY'),  # Product description generator credential
        GEMINI_MODEL=os.environ.get('GEMINI_MODEL', 'gemini-2.0-flash'),
        GEMINI_API_URL=os.environ.get('GEMINI_API_URL', 'https://generativelanguage.googleapis.com/v1beta'),
        DESCRIPTION_TIMEOUT=int(os.environ.get('DESCRIPTION_TIMEOUT', '20')),  # seconds
        LOW_STOCK_THRESHOLD=LOW_STOCK_THRESHOLD,
        EXPIRY_WARNING_DAYS=EXPIRY_WARNING_DAYS,
        LOG_LEVEL=os.environ.get('LOG_LEVEL', 'INFO'),
    )

    # Override config with test settings if provided (useful for unit tests)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config['LOG_LEVEL'])

    # Initialize SQLAlchemy with the Flask app
    db.init_app(app)

    # ==================== DATABASE INITIALIZATION ====================
    with app.app_context():
        db.create_all()

    # ==================== AUTHENTICATION & SESSION MANAGEMENT ====================

    @app.before_request
    def load_current_user():
        """
        Load the current user from session before each request.
        Makes user object available in request context (g.current_user).
        """
        user_id = session.get('user_id')
        g.current_user = None
        if user_id is not None:
            g.current_user = db.session.get(User, user_id)

    @app.context_processor
    def inject_globals():
        """
        Make the current user, the role-filtered navigation and the header
        notification counts available in all Jinja2 templates.
        """
        user = g.get('current_user', None)
        context = {
            'current_user': user,
            'nav_items': visible_nav_items(user),
            'low_stock_count': 0,
            'pending_sales_orders_count': 0,
        }
        if user is not None:
            threshold = app.config['LOW_STOCK_THRESHOLD']
            context['low_stock_count'] = Product.query.filter(
                Product.stock > 0, Product.stock < threshold
            ).count()
            context['pending_sales_orders_count'] = SalesOrder.query.filter_by(
                status=SalesOrder.STATUS_PENDING
            ).count()
        return context

    def login_required(fn):
        """
        Decorator to protect routes that require authentication.
        Redirects unauthenticated users to login page with flash message.
        """
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if g.get('current_user') is None:
                flash('You must be logged in to access that page.')
                return redirect(url_for('login'))
            return fn(*args, **kwargs)

        return wrapped

    def admin_required(fn):
        """
        Decorator for admin-only routes.
        Anonymous users go to the login page; logged-in non-admins get a 403.
        """
        @wraps(fn)
        def wrapped(*args, **kwargs):
            user = g.get('current_user')
            if user is None:
                flash('You must be logged in to access that page.')
                return redirect(url_for('login'))
            if not user.is_admin:
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    def confirmation_page(title, message, cancel_url, extra_checks=None):
        """Render the shared confirm step for destructive or stock-affecting actions."""
        return render_template(
            'confirm.html',
            title=title,
            message=message,
            action_url=request.path,
            cancel_url=cancel_url,
            extra_checks=extra_checks or [],
        )

    @app.errorhandler(403)
    def forbidden(error):
        return render_template('403.html'), 403

    @app.errorhandler(404)
    def not_found(error):
        if request.path.startswith('/api/'):
            return jsonify(error='Not found'), 404
        return render_template('404.html'), 404

    # ==================== MAIN APPLICATION ROUTES ====================

    @app.route('/')
    @login_required
    def home():
        """
        Dashboard: record counts, the five most recent sales, low-stock and
        expiring products.
        """
        threshold = app.config['LOW_STOCK_THRESHOLD']
        warning_days = app.config['EXPIRY_WARNING_DAYS']
        today = date.today()

        stats = {
            'products': Product.query.count(),
            'customers': Customer.query.count(),
            'suppliers': Supplier.query.count(),
            'sales': Sale.query.count(),
            'revenue': db.session.query(db.func.coalesce(db.func.sum(Sale.total), 0.0)).scalar() or 0.0,
        }
        recent_sales = Sale.query.order_by(Sale.date.desc(), Sale.id.desc()).limit(5).all()
        low_stock = Product.query.filter(Product.stock < threshold).order_by(Product.stock, Product.name).all()
        expiring = [
            p for p in Product.query.filter(Product.expiry_date.isnot(None)).order_by(Product.expiry_date).all()
            if p.expiry_status(today, warning_days) != 'ok'
        ]
        return render_template(
            'home.html',
            stats=stats,
            recent_sales=recent_sales,
            low_stock_products=low_stock,
            expiring_products=expiring,
            today=today,
            warning_days=warning_days,
        )

    @app.route('/go/<page>')
    @login_required
    def go(page):
        """Navigate by page name; unknown or forbidden names fall back to the dashboard."""
        for item in visible_nav_items(g.current_user):
            if item['id'] == page:
                return redirect(url_for(item['endpoint']))
        return redirect(url_for('home'))

    @app.route('/about')
    @login_required
    def about():
        return render_template('about.html')

    # ==================== AUTHENTICATION ROUTES ====================

    @app.route('/signup', methods=['GET', 'POST'])
    def signup():
        """
        User registration route.
        GET: Display signup form
        POST: Validate and create a regular (non-admin) account
        """
        if request.method == 'POST':
            username = request.form.get('username', '').strip()
            password = request.form.get('password', '')
            confirm_password = request.form.get('confirm_password', '')

            if not username or not password or not confirm_password:
                flash('All fields are required.')
                return redirect(url_for('signup'))
            if len(password) < MIN_PASSWORD_LENGTH:
                flash(f'Password must be at least {MIN_PASSWORD_LENGTH} characters.')
                return redirect(url_for('signup'))
            if password != confirm_password:
                flash('Passwords do not match.')
                return redirect(url_for('signup'))
            if username_taken(username):
                flash('Username already exists.')
                return redirect(url_for('signup'))

            user = User(username=username, role=ROLE_USER)
            user.set_password(password)
            db.session.add(user)
            db.session.commit()
            app.logger.info('New account registered: %s', username)

            flash('Account created successfully. Please log in.')
            return redirect(url_for('login'))

        return render_template('signup.html')

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        """
        User login route.
        GET: Display login form
        POST: Authenticate user and create session
        """
        if request.method == 'POST':
            username = request.form.get('username', '').strip()
            password = request.form.get('password', '')

            user = User.query.filter_by(username=username).first()
            if user and user.check_password(password):
                session.clear()
                session['user_id'] = user.id
                return redirect(url_for('home'))

            app.logger.warning('Failed login attempt for %r', username)
            flash('Invalid username or password.')
            return redirect(url_for('login'))

        return render_template('login.html')

    @app.route('/logout')
    def logout():
        """Clear the session and go back to the login page."""
        session.clear()
        flash('You have been logged out.')
        return redirect(url_for('login'))

    def username_taken(username, exclude_id=None):
        """Case-insensitive username lookup, optionally ignoring one user."""
        query = User.query.filter(db.func.lower(User.username) == username.lower())
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        return query.first() is not None

    # ==================== PRODUCT MANAGEMENT ROUTES ====================

    def filtered_products(search, stock_filter):
        query = Product.query
        if search:
            pattern = f'%{search}%'
            query = query.filter(db.or_(Product.name.ilike(pattern), Product.code.ilike(pattern)))
        if stock_filter == 'in_stock':
            query = query.filter(Product.stock > 0)
        elif stock_filter == 'low_stock':
            query = query.filter(Product.stock > 0, Product.stock < app.config['LOW_STOCK_THRESHOLD'])
        elif stock_filter == 'out_of_stock':
            query = query.filter(Product.stock == 0)
        return query.order_by(Product.name).all()

    def product_list_args():
        search = request.args.get('q', '').strip()
        stock_filter = request.args.get('stock', 'all')
        if stock_filter not in STOCK_FILTERS:
            stock_filter = 'all'
        return search, stock_filter

    @app.route('/products')
    @login_required
    def products():
        """
        Product catalog with search (name or code) and stock filter.
        Purchase prices are only shown to admins.
        """
        search, stock_filter = product_list_args()
        return render_template(
            'products.html',
            products=filtered_products(search, stock_filter),
            search=search,
            stock_filter=stock_filter,
            stock_filters=STOCK_FILTERS,
            today=date.today(),
            warning_days=app.config['EXPIRY_WARNING_DAYS'],
        )

    @app.route('/products/export')
    @login_required
    def export_products():
        search, stock_filter = product_list_args()
        include_cost = g.current_user.is_admin
        rows = [p.to_dict(include_purchase_price=include_cost) for p in filtered_products(search, stock_filter)]
        return csv_response(rows, 'products')

    def product_form_values(product=None):
        """Form values for the product form, from a product or the submitted form."""
        if request.method == 'POST':
            return {
                'name': request.form.get('name', '').strip(),
                'code': request.form.get('code', '').strip(),
                'description': request.form.get('description', '').strip(),
                'purchase_price': request.form.get('purchase_price', '0').strip(),
                'sell_price': request.form.get('sell_price', '0').strip(),
                'stock': request.form.get('stock', '0').strip(),
                'expiry_date': request.form.get('expiry_date', '').strip(),
            }
        if product is not None:
            return {
                'name': product.name,
                'code': product.code or '',
                'description': product.description or '',
                'purchase_price': product.purchase_price,
                'sell_price': product.sell_price,
                'stock': product.stock,
                'expiry_date': product.expiry_date.isoformat() if product.expiry_date else '',
            }
        return {
            'name': '', 'code': '', 'description': '', 'purchase_price': 0,
            'sell_price': 0, 'stock': 0, 'expiry_date': '',
        }

    def fill_description(values):
        """Ask the description generator for the product named in the form."""
        if not values['name']:
            flash('Please enter the product name first.')
            return
        try:
            values['description'] = generate_description(values['name'])
            flash('Description generated. Review it before saving.')
        except (DescriptionError, ValueError) as exc:
            app.logger.warning('Description generation failed for %r: %s', values['name'], exc)
            flash('Failed to generate a description. Please try again.')

    def save_product_form(product, values):
        """
        Validate the submitted values and apply them to `product`.
        Returns an error message, or None when the product was saved.
        """
        if not values['name']:
            return 'Product name is required.'
        purchase_price = _parse_float(values['purchase_price'], None)
        sell_price = _parse_float(values['sell_price'], None)
        stock = _parse_int(values['stock'], None)
        if purchase_price is None or sell_price is None or purchase_price < 0 or sell_price < 0:
            return 'Prices must be non-negative numbers.'
        if stock is None:
            return 'Stock must be a whole number.'
        expiry_date = None
        if values['expiry_date']:
            expiry_date = _parse_date(values['expiry_date'])
            if expiry_date is None:
                return 'Expiry date must be in YYYY-MM-DD format.'

        code = values['code'] or product.code or transactions.next_product_code()
        duplicate = Product.query.filter(Product.code == code)
        if product.id is not None:
            duplicate = duplicate.filter(Product.id != product.id)
        if duplicate.first() is not None:
            return 'Product code already exists.'

        product.code = code
        product.name = values['name']
        product.description = values['description']
        product.purchase_price = purchase_price
        product.sell_price = sell_price
        product.stock = stock
        product.expiry_date = expiry_date
        if product.id is None:
            db.session.add(product)
        db.session.commit()
        return None

    @app.route('/products/add', methods=['GET', 'POST'])
    @admin_required
    def add_product():
        """
        Add a new product.
        GET: Show the product form
        POST: 'generate' fills the description and re-renders, otherwise save
        """
        values = product_form_values()
        if request.method == 'POST':
            if request.form.get('action') == 'generate':
                fill_description(values)
            else:
                error = save_product_form(Product(), values)
                if error is None:
                    flash('Product added.')
                    return redirect(url_for('products'))
                flash(error)
        return render_template('product_form.html', product=None, form=values)

    @app.route('/products/<int:product_id>/edit', methods=['GET', 'POST'])
    @admin_required
    def edit_product(product_id):
        product = db.session.get(Product, product_id)
        if product is None:
            abort(404)
        values = product_form_values(product)
        if request.method == 'POST':
            if request.form.get('action') == 'generate':
                fill_description(values)
            else:
                error = save_product_form(product, values)
                if error is None:
                    flash('Product updated.')
                    return redirect(url_for('products'))
                db.session.rollback()
                flash(error)
        return render_template('product_form.html', product=product, form=values)

    @app.route('/products/<int:product_id>/delete', methods=['GET', 'POST'])
    @admin_required
    def delete_product(product_id):
        """Delete a product after confirmation. Historic documents keep their line snapshots."""
        product = db.session.get(Product, product_id)
        if product is None:
            abort(404)
        if request.method == 'GET':
            return confirmation_page(
                'Delete product',
                f'Delete product "{product.name}" ({product.code})? Existing invoices and orders keep their lines.',
                url_for('products'),
            )
        if not confirmed():
            flash('Deletion was not confirmed.')
            return redirect(url_for('delete_product', product_id=product_id))
        db.session.delete(product)
        db.session.commit()
        flash('Product deleted.')
        return redirect(url_for('products'))

    # ==================== CUSTOMERS & SUPPLIERS ====================

    def register_contact_routes(model, name, label):
        """
        Register list / add / edit / delete / export routes for a contact
        collection (customers or suppliers). Endpoints are `<name>`,
        `<name>_add`, `<name>_edit`, `<name>_delete` and `<name>_export`.
        """
        def search_contacts():
            search = request.args.get('q', '').strip()
            query = model.query
            if search:
                pattern = f'%{search}%'
                query = query.filter(db.or_(model.name.ilike(pattern), model.phone.ilike(pattern)))
            return search, query.order_by(model.name).all()

        def list_view():
            search, contacts = search_contacts()
            return render_template('contacts.html', contacts=contacts, search=search, name=name, label=label)

        def export_view():
            _, contacts = search_contacts()
            return csv_response([contact.to_dict() for contact in contacts], name)

        def save_contact(contact):
            values = {
                'name': request.form.get('name', '').strip(),
                'phone': request.form.get('phone', '').strip(),
                'address': request.form.get('address', '').strip(),
            }
            if not values['name']:
                flash(f'{label} name is required.')
                return None, values
            for key, value in values.items():
                setattr(contact, key, value)
            if contact.id is None:
                db.session.add(contact)
            db.session.commit()
            return contact, values

        def add_view():
            values = {'name': '', 'phone': '', 'address': ''}
            if request.method == 'POST':
                saved, values = save_contact(model())
                if saved is not None:
                    flash(f'{label} added.')
                    return redirect(url_for(name))
            return render_template('contact_form.html', contact=None, form=values, name=name, label=label)

        def edit_view(contact_id):
            contact = db.session.get(model, contact_id)
            if contact is None:
                abort(404)
            values = contact.to_dict()
            if request.method == 'POST':
                saved, values = save_contact(contact)
                if saved is not None:
                    flash(f'{label} updated.')
                    return redirect(url_for(name))
            return render_template('contact_form.html', contact=contact, form=values, name=name, label=label)

        def delete_view(contact_id):
            contact = db.session.get(model, contact_id)
            if contact is None:
                abort(404)
            if request.method == 'GET':
                return confirmation_page(
                    f'Delete {label.lower()}',
                    f'Delete {label.lower()} "{contact.name}"? Existing documents keep the name.',
                    url_for(name),
                )
            if not confirmed():
                flash('Deletion was not confirmed.')
                return redirect(url_for(f'{name}_delete', contact_id=contact_id))
            db.session.delete(contact)
            db.session.commit()
            flash(f'{label} deleted.')
            return redirect(url_for(name))

        app.add_url_rule(f'/{name}', name, login_required(list_view))
        app.add_url_rule(f'/{name}/export', f'{name}_export', login_required(export_view))
        app.add_url_rule(f'/{name}/add', f'{name}_add', login_required(add_view), methods=['GET', 'POST'])
        app.add_url_rule(
            f'/{name}/<int:contact_id>/edit', f'{name}_edit', login_required(edit_view), methods=['GET', 'POST']
        )
        app.add_url_rule(
            f'/{name}/<int:contact_id>/delete', f'{name}_delete', login_required(delete_view), methods=['GET', 'POST']
        )

    register_contact_routes(Customer, 'customers', 'Customer')
    register_contact_routes(Supplier, 'suppliers', 'Supplier')

    # ==================== SALES ROUTES ====================

    def catalog():
        return Product.query.order_by(Product.name).all()

    def document_values(document=None, contact_field='customer_id'):
        """Header values (contact, discount, notes) for the sale / order forms."""
        if request.method == 'POST':
            return {
                contact_field: request.form.get(contact_field, ''),
                'discount': request.form.get('discount', '0'),
                'notes': request.form.get('notes', ''),
            }
        if document is not None:
            return {
                contact_field: getattr(document, contact_field) or '',
                'discount': round(getattr(document, 'discount_percentage', 0.0), 2),
                'notes': document.notes or '',
            }
        return {contact_field: '', 'discount': '0', 'notes': ''}

    def render_sale_form(sale=None):
        return render_template(
            'sale_form.html',
            sale=sale,
            customers=Customer.query.order_by(Customer.name).all(),
            products=catalog(),
            rows=form_rows(request.form if request.method == 'POST' else None, sale.items if sale else None),
            form=document_values(sale),
        )

    def submit_sale(sale=None):
        """Run the sale flow for the submitted form; returns the saved sale or None."""
        customer = db.session.get(Customer, _parse_int(request.form.get('customer_id'), 0))
        try:
            lines = parse_lines(request.form, with_price=g.current_user.is_admin)
            return transactions.save_sale(
                customer,
                lines,
                g.current_user,
                discount_percent=_parse_float(request.form.get('discount'), 0.0),
                notes=request.form.get('notes'),
                sale=sale,
            )
        except TransactionError as exc:
            flash(str(exc))
            return None

    @app.route('/sales')
    @login_required
    def sales():
        """Sales history, most recent first, searchable by invoice number or customer."""
        search = request.args.get('q', '').strip()
        query = Sale.query
        if search:
            pattern = f'%{search}%'
            query = query.filter(db.or_(Sale.invoice_number.ilike(pattern), Sale.customer_name.ilike(pattern)))
        items = query.order_by(Sale.date.desc(), Sale.id.desc()).all()
        return render_template('sales.html', sales=items, search=search)

    @app.route('/sales/export')
    @login_required
    def export_sales():
        rows = [sale.to_dict() for sale in Sale.query.order_by(Sale.date.desc()).all()]
        return csv_response(rows, 'sales')

    @app.route('/sales/add', methods=['GET', 'POST'])
    @login_required
    def add_sale():
        """
        Record a sale (invoice).
        POST: all lines are checked against stock before anything is written;
        on success stock is decremented and an INV-NNNN number assigned.
        """
        if request.method == 'POST':
            sale = submit_sale()
            if sale is not None:
                flash(f'Sale recorded as invoice {sale.invoice_number}.')
                return redirect(url_for('view_sale', sale_id=sale.id))
        return render_sale_form()

    @app.route('/sales/<int:sale_id>')
    @login_required
    def view_sale(sale_id):
        """Printable invoice preview."""
        sale = db.session.get(Sale, sale_id)
        if sale is None:
            abort(404)
        return render_template('invoice.html', sale=sale)

    @app.route('/sales/<int:sale_id>/edit', methods=['GET', 'POST'])
    @admin_required
    def edit_sale(sale_id):
        sale = db.session.get(Sale, sale_id)
        if sale is None:
            abort(404)
        if request.method == 'POST':
            saved = submit_sale(sale)
            if saved is not None:
                flash('Sale updated.')
                return redirect(url_for('view_sale', sale_id=saved.id))
            # the failed flow rolled back; reload the unchanged sale
            sale = db.session.get(Sale, sale_id)
        return render_sale_form(sale)

    @app.route('/sales/<int:sale_id>/delete', methods=['GET', 'POST'])
    @admin_required
    def delete_sale(sale_id):
        sale = db.session.get(Sale, sale_id)
        if sale is None:
            abort(404)
        if request.method == 'GET':
            return confirmation_page(
                'Delete sale',
                f'Delete invoice {sale.invoice_number}? Its quantities will be returned to stock.',
                url_for('sales'),
            )
        if not confirmed():
            flash('Deletion was not confirmed.')
            return redirect(url_for('delete_sale', sale_id=sale_id))
        transactions.delete_sale(sale)
        flash('Sale deleted and stock restored.')
        return redirect(url_for('sales'))

    # ==================== PURCHASE ORDER ROUTES ====================

    def render_order_form(order=None):
        return render_template(
            'order_form.html',
            order=order,
            suppliers=Supplier.query.order_by(Supplier.name).all(),
            products=catalog(),
            rows=form_rows(request.form if request.method == 'POST' else None, order.items if order else None),
            form=document_values(order, contact_field='supplier_id'),
        )

    def submit_order(order=None):
        supplier = db.session.get(Supplier, _parse_int(request.form.get('supplier_id'), 0))
        try:
            lines = parse_lines(request.form, with_price=True)
            return transactions.save_purchase_order(supplier, lines, notes=request.form.get('notes'), order=order)
        except TransactionError as exc:
            flash(str(exc))
            return None

    @app.route('/orders')
    @admin_required
    def orders():
        """Purchase orders, newest first, searchable by number or supplier."""
        search = request.args.get('q', '').strip()
        query = PurchaseOrder.query
        if search:
            pattern = f'%{search}%'
            query = query.filter(db.or_(
                PurchaseOrder.order_number.ilike(pattern), PurchaseOrder.supplier_name.ilike(pattern)
            ))
        items = query.order_by(PurchaseOrder.date.desc(), PurchaseOrder.id.desc()).all()
        return render_template('orders.html', orders=items, search=search)

    @app.route('/orders/export')
    @admin_required
    def export_orders():
        rows = [order.to_dict() for order in PurchaseOrder.query.order_by(PurchaseOrder.date.desc()).all()]
        return csv_response(rows, 'orders')

    @app.route('/orders/add', methods=['GET', 'POST'])
    @admin_required
    def add_order():
        if request.method == 'POST':
            order = submit_order()
            if order is not None:
                flash(f'Purchase order {order.order_number} created.')
                return redirect(url_for('view_order', order_id=order.id))
        return render_order_form()

    @app.route('/orders/<int:order_id>')
    @admin_required
    def view_order(order_id):
        order = db.session.get(PurchaseOrder, order_id)
        if order is None:
            abort(404)
        return render_template('order_detail.html', order=order, statuses=PurchaseOrder.STATUSES)

    @app.route('/orders/<int:order_id>/edit', methods=['GET', 'POST'])
    @admin_required
    def edit_order(order_id):
        order = db.session.get(PurchaseOrder, order_id)
        if order is None:
            abort(404)
        if order.status == PurchaseOrder.STATUS_COMPLETED:
            flash('Completed orders cannot be edited. Move the order back to pending first.')
            return redirect(url_for('view_order', order_id=order_id))
        if request.method == 'POST':
            saved = submit_order(order)
            if saved is not None:
                flash('Purchase order updated.')
                return redirect(url_for('view_order', order_id=saved.id))
            order = db.session.get(PurchaseOrder, order_id)
        return render_order_form(order)

    def flash_clamped(names):
        flash(f'Stock was lower than the received quantity and was set to zero for: {", ".join(names)}')

    @app.route('/orders/<int:order_id>/status', methods=['POST'])
    @admin_required
    def order_status(order_id):
        """
        Change a purchase order's status.
        Completing receives stock; leaving 'completed' reverses it. Both need
        the confirm checkbox.
        """
        order = db.session.get(PurchaseOrder, order_id)
        if order is None:
            abort(404)
        status = request.form.get('status', '')
        touches_stock = status != order.status and PurchaseOrder.STATUS_COMPLETED in (status, order.status)
        if touches_stock and not confirmed():
            flash('Please confirm the stock update before changing the status.')
            return redirect(url_for('view_order', order_id=order_id))

        try:
            change = transactions.set_purchase_order_status(order, status)
        except TransactionError as exc:
            flash(str(exc))
            return redirect(url_for('view_order', order_id=order_id))

        if status == PurchaseOrder.STATUS_COMPLETED and touches_stock:
            flash('Order completed. Received quantities were added to stock.')
        elif touches_stock:
            flash('Order status updated. Received quantities were removed from stock.')
        else:
            flash('Order status updated.')
        if change.created:
            names = ', '.join(f'{p.name} ({p.code})' for p in change.created)
            flash(f'New products were created from this order and need review: {names}')
        if change.clamped:
            flash_clamped(change.clamped)
        return redirect(url_for('view_order', order_id=order_id))

    @app.route('/orders/<int:order_id>/delete', methods=['GET', 'POST'])
    @admin_required
    def delete_order(order_id):
        order = db.session.get(PurchaseOrder, order_id)
        if order is None:
            abort(404)
        completed = order.status == PurchaseOrder.STATUS_COMPLETED
        if request.method == 'GET':
            extra = []
            if completed:
                extra.append({
                    'name': 'confirm_stock',
                    'label': 'This order is completed. Remove its received quantities from stock.',
                })
            return confirmation_page(
                'Delete purchase order',
                f'Delete purchase order {order.order_number}?',
                url_for('view_order', order_id=order_id),
                extra_checks=extra,
            )
        if not confirmed():
            flash('Deletion was not confirmed.')
            return redirect(url_for('delete_order', order_id=order_id))
        try:
            clamped = transactions.delete_purchase_order(order, confirm_stock_reversal=confirmed('confirm_stock'))
        except TransactionError as exc:
            flash(str(exc))
            return redirect(url_for('delete_order', order_id=order_id))
        flash('Purchase order deleted.')
        if clamped:
            flash_clamped(clamped)
        return redirect(url_for('orders'))

    # ==================== PURCHASE REQUEST ROUTES ====================

    @app.route('/purchase-requests')
    @login_required
    def purchase_requests():
        """Admins see every request; other users only their own."""
        query = PurchaseRequest.query
        if not g.current_user.is_admin:
            query = query.filter_by(requested_by=g.current_user.username)
        items = query.order_by(PurchaseRequest.date.desc(), PurchaseRequest.id.desc()).all()
        return render_template('purchase_requests.html', requests=items)

    @app.route('/purchase-requests/add', methods=['GET', 'POST'])
    @login_required
    def add_purchase_request():
        if request.method == 'POST':
            try:
                lines = parse_lines(request.form, with_reason=True)
                created = transactions.create_purchase_request(g.current_user, lines)
            except TransactionError as exc:
                flash(str(exc))
            else:
                flash(f'Purchase request {created.request_number} submitted.')
                return redirect(url_for('purchase_requests'))
        return render_template(
            'purchase_request_form.html',
            products=catalog(),
            rows=form_rows(request.form if request.method == 'POST' else None),
        )

    @app.route('/purchase-requests/<int:request_id>/approve', methods=['POST'])
    @admin_required
    def approve_purchase_request(request_id):
        purchase_request = db.session.get(PurchaseRequest, request_id)
        if purchase_request is None:
            abort(404)
        try:
            order = transactions.approve_purchase_request(purchase_request)
        except TransactionError as exc:
            flash(str(exc))
        else:
            flash(
                f'Request approved and purchase order {order.order_number} created. '
                'Please assign a supplier on the purchase orders page.'
            )
        return redirect(url_for('purchase_requests'))

    @app.route('/purchase-requests/<int:request_id>/reject', methods=['POST'])
    @admin_required
    def reject_purchase_request(request_id):
        purchase_request = db.session.get(PurchaseRequest, request_id)
        if purchase_request is None:
            abort(404)
        try:
            transactions.reject_purchase_request(purchase_request)
        except TransactionError as exc:
            flash(str(exc))
        else:
            flash('Request rejected.')
        return redirect(url_for('purchase_requests'))

    # ==================== SALES ORDER ROUTES ====================

    def render_sales_order_form(order=None):
        return render_template(
            'sales_order_form.html',
            order=order,
            customers=Customer.query.order_by(Customer.name).all(),
            products=catalog(),
            rows=form_rows(request.form if request.method == 'POST' else None, order.items if order else None),
            form=document_values(order),
        )

    def submit_sales_order(order=None):
        customer = db.session.get(Customer, _parse_int(request.form.get('customer_id'), 0))
        try:
            lines = parse_lines(request.form, with_price=g.current_user.is_admin)
            return transactions.save_sales_order(
                customer,
                lines,
                g.current_user,
                discount_percent=_parse_float(request.form.get('discount'), 0.0),
                notes=request.form.get('notes'),
                order=order,
            )
        except TransactionError as exc:
            flash(str(exc))
            return None

    @app.route('/sales-orders')
    @login_required
    def sales_orders():
        items = SalesOrder.query.order_by(SalesOrder.date.desc(), SalesOrder.id.desc()).all()
        return render_template('sales_orders.html', orders=items)

    @app.route('/sales-orders/export')
    @login_required
    def export_sales_orders():
        rows = [order.to_dict() for order in SalesOrder.query.order_by(SalesOrder.date.desc()).all()]
        return csv_response(rows, 'sales-orders')

    @app.route('/sales-orders/add', methods=['GET', 'POST'])
    @login_required
    def add_sales_order():
        """Create a pending sales order. No stock is checked or reserved at this point."""
        if request.method == 'POST':
            order = submit_sales_order()
            if order is not None:
                flash(f'Sales order {order.order_number} created.')
                return redirect(url_for('view_sales_order', order_id=order.id))
        return render_sales_order_form()

    @app.route('/sales-orders/<int:order_id>')
    @login_required
    def view_sales_order(order_id):
        order = db.session.get(SalesOrder, order_id)
        if order is None:
            abort(404)
        return render_template('sales_order_detail.html', order=order)

    @app.route('/sales-orders/<int:order_id>/edit', methods=['GET', 'POST'])
    @admin_required
    def edit_sales_order(order_id):
        order = db.session.get(SalesOrder, order_id)
        if order is None:
            abort(404)
        if order.status != SalesOrder.STATUS_PENDING:
            flash('Only pending sales orders can be edited.')
            return redirect(url_for('view_sales_order', order_id=order_id))
        if request.method == 'POST':
            saved = submit_sales_order(order)
            if saved is not None:
                flash('Sales order updated.')
                return redirect(url_for('view_sales_order', order_id=saved.id))
            order = db.session.get(SalesOrder, order_id)
        return render_sales_order_form(order)

    @app.route('/sales-orders/<int:order_id>/cancel', methods=['POST'])
    @admin_required
    def cancel_sales_order(order_id):
        order = db.session.get(SalesOrder, order_id)
        if order is None:
            abort(404)
        if not confirmed():
            flash('Please confirm the cancellation.')
            return redirect(url_for('view_sales_order', order_id=order_id))
        try:
            transactions.cancel_sales_order(order)
        except TransactionError as exc:
            flash(str(exc))
        else:
            flash('Sales order cancelled.')
        return redirect(url_for('view_sales_order', order_id=order_id))

    @app.route('/sales-orders/<int:order_id>/invoice', methods=['POST'])
    @admin_required
    def invoice_sales_order(order_id):
        """
        Convert a pending sales order into a sale. Stock is re-checked at this
        moment; any shortage leaves the order pending and nothing changes.
        """
        order = db.session.get(SalesOrder, order_id)
        if order is None:
            abort(404)
        if not confirmed():
            flash('Please confirm the conversion to an invoice.')
            return redirect(url_for('view_sales_order', order_id=order_id))
        try:
            sale = transactions.convert_sales_order(order)
        except transactions.InsufficientStock as exc:
            flash(f'{exc}. The invoice cannot be created.')
            return redirect(url_for('view_sales_order', order_id=order_id))
        except TransactionError as exc:
            flash(str(exc))
            return redirect(url_for('view_sales_order', order_id=order_id))
        flash(f'Sales order converted to invoice {sale.invoice_number}.')
        return redirect(url_for('view_sale', sale_id=sale.id))

    # ==================== REPORTS ROUTES ====================

    def report_period():
        """Year for the monthly table and the [start, end] window for the detail tables."""
        today = date.today()
        year = _parse_int(request.args.get('year'), today.year)
        start = _parse_date(request.args.get('start')) or today.replace(day=1)
        end = _parse_date(request.args.get('end')) or today
        return year, start, end

    @app.route('/reports')
    @login_required
    def reports():
        """
        Monthly sales vs. completed purchases for a year, plus top products and
        sales per customer for a date range.
        """
        year, start, end = report_period()
        all_sales = Sale.query.all()
        monthly = monthly_totals(all_sales, PurchaseOrder.query.all(), year)
        detail = sales_detail(all_sales, start, end)
        return render_template('reports.html', monthly=monthly, detail=detail, year=year, start=start, end=end)

    @app.route('/reports/export/<kind>')
    @login_required
    def export_report(kind):
        year, start, end = report_period()
        all_sales = Sale.query.all()
        if kind == 'monthly':
            monthly = monthly_totals(all_sales, PurchaseOrder.query.all(), year)
            rows = [
                {'month': bucket['name'], 'sales': bucket['sales'], 'purchases': bucket['purchases']}
                for bucket in monthly['months']
            ]
            prefix = f'monthly-report-{year}'
        elif kind in ('top-products', 'sales-by-customer'):
            detail = sales_detail(all_sales, start, end)
            rows = detail['top_products'] if kind == 'top-products' else detail['sales_by_customer']
            prefix = f'{kind}-report-{start.isoformat()}-to-{end.isoformat()}'
        else:
            abort(404)
        if not rows:
            flash('No data to export for the selected period.')
            return redirect(url_for('reports', year=year, start=start.isoformat(), end=end.isoformat()))
        return csv_response(rows, prefix)

    # ==================== USER MANAGEMENT ROUTES ====================

    def user_form_values(user=None):
        if request.method == 'POST':
            return {
                'username': request.form.get('username', '').strip(),
                'role': request.form.get('role', ROLE_USER),
            }
        if user is not None:
            return {'username': user.username, 'role': user.role}
        return {'username': '', 'role': ROLE_USER}

    def save_user_form(user, values):
        """Apply the submitted user form; returns an error message or None."""
        password = request.form.get('password', '')
        if not values['username']:
            return 'Username is required.'
        if values['role'] not in (ROLE_ADMIN, ROLE_USER):
            return 'Unknown role.'
        if user.id is None and not password:
            return 'Password is required for new users.'
        if password and len(password) < MIN_PASSWORD_LENGTH:
            return f'Password must be at least {MIN_PASSWORD_LENGTH} characters.'
        if username_taken(values['username'], exclude_id=user.id):
            return 'Username already exists.'

        user.username = values['username']
        user.role = values['role']
        # a blank password on edit keeps the existing hash
        if password:
            user.set_password(password)
        if user.id is None:
            db.session.add(user)
        db.session.commit()
        return None

    @app.route('/users')
    @admin_required
    def users():
        return render_template('users.html', users=User.query.order_by(User.username).all())

    @app.route('/users/add', methods=['GET', 'POST'])
    @admin_required
    def add_user():
        values = user_form_values()
        if request.method == 'POST':
            error = save_user_form(User(), values)
            if error is None:
                flash('User added.')
                return redirect(url_for('users'))
            flash(error)
        return render_template('user_form.html', user=None, form=values, roles=(ROLE_ADMIN, ROLE_USER))

    @app.route('/users/<int:user_id>/edit', methods=['GET', 'POST'])
    @admin_required
    def edit_user(user_id):
        user = db.session.get(User, user_id)
        if user is None:
            abort(404)
        values = user_form_values(user)
        if request.method == 'POST':
            error = save_user_form(user, values)
            if error is None:
                flash('User updated.')
                return redirect(url_for('users'))
            db.session.rollback()
            flash(error)
        return render_template('user_form.html', user=user, form=values, roles=(ROLE_ADMIN, ROLE_USER))

    @app.route('/users/<int:user_id>/delete', methods=['GET', 'POST'])
    @admin_required
    def delete_user(user_id):
        user = db.session.get(User, user_id)
        if user is None:
            abort(404)
        if user.id == g.current_user.id:
            flash('You cannot delete your own account.')
            return redirect(url_for('users'))
        if request.method == 'GET':
            return confirmation_page('Delete user', f'Delete user "{user.username}"?', url_for('users'))
        if not confirmed():
            flash('Deletion was not confirmed.')
            return redirect(url_for('delete_user', user_id=user_id))
        db.session.delete(user)
        db.session.commit()
        flash('User deleted.')
        return redirect(url_for('users'))

    # ==================== JSON API ====================

    @app.route('/api/generate-description', methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'])
    def api_generate_description():
        """
        Generate a product description from {"productName": "..."}.
        Responds {"text": ...} or {"error": ...} with 405 / 401 / 400 / 500.
        """
        if request.method != 'POST':
            return jsonify(error='Method not allowed'), 405
        if g.current_user is None:
            return jsonify(error='Authentication required'), 401

        payload = request.get_json(silent=True)
        product_name = payload.get('productName') if isinstance(payload, dict) else None
        if not isinstance(product_name, str) or not product_name.strip():
            return jsonify(error='Invalid productName'), 400

        if not app.config.get('GEMINI_API_KEY'):
            return jsonify(error='GEMINI_API_KEY not set'), 500
        try:
            text = generate_description(product_name)
        except DescriptionError:
            app.logger.exception('Description generation failed for %r', product_name)
            return jsonify(error='Internal Server Error'), 500
        return jsonify(text=text)

    @app.route('/api/collections/<name>')
    def api_collection(name):
        """A whole named collection as a JSON array."""
        user = g.current_user
        if user is None:
            return jsonify(error='Authentication required'), 401
        model = COLLECTIONS.get(name)
        if model is None:
            return jsonify(error=f'Unknown collection: {name}'), 404
        if name in ('users', 'orders') and not user.is_admin:
            return jsonify(error='Forbidden'), 403
        records = model.query.order_by(model.id).all()
        if model is Product:
            return jsonify([p.to_dict(include_purchase_price=user.is_admin) for p in records])
        return jsonify([record.to_dict() for record in records])

    # ==================== CLI COMMANDS ====================

    @app.cli.command('seed')
    def seed_command():
        """Load the demo catalog, contacts and the admin/user accounts into empty tables."""
        added = seed_database()
        for table, count in added.items():
            click.echo(f'{table}: {count} added')

    # Return the configured Flask application
    return app


# ==================== APPLICATION ENTRY POINT ====================

if __name__ == '__main__':
    create_app().run(debug=True, host='127.0.0.1', port=5000)
