from logging.handlers import RotatingFileHandler
import csv
import io
import logging
import math
import os
import random
import string
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from functools import wraps

from flask import Flask, Blueprint, jsonify, request, make_response, current_app, has_request_context
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager, UserMixin, login_user, login_required, logout_user, current_user
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFProtect, generate_csrf
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import func, case, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash

from config import Config, get_database_uri
from utils.settlement import (
    ZERO,
    allocate_payment,
    parse_amount,
    parse_waiver_reason,
    payment_description,
    plan_settlement,
    to_money,
    waiver_description,
)
from utils.ledger_report import LedgerValidationResult, generate_validation_report, summarize

# Reporting timezone for visit codes and invoice stamps (IST, UTC+5:30).
LAB_TZ = timezone(timedelta(hours=5, minutes=30))


def get_lab_now():
    """Get current time in the lab's local timezone"""
    return datetime.now(LAB_TZ)


def utcnow():
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Initialize Flask app
app = Flask(__name__)
app.config.from_object(Config)
app.config['SQLALCHEMY_DATABASE_URI'] = get_database_uri()

if app.config.get('LOG_TO_FILE'):
    log_dir = app.config.get('LOG_DIR', 'logs')
    os.makedirs(log_dir, exist_ok=True)

    file_handler = RotatingFileHandler(os.path.join(log_dir, 'lab.log'), maxBytes=1024 * 1024, backupCount=10)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    ))
    file_handler.setLevel(logging.INFO)
    app.logger.addHandler(file_handler)
    app.logger.setLevel(logging.INFO)
    app.logger.info('Lab ledger service starting in production mode')
else:
    app.logger.setLevel(logging.DEBUG if app.config.get('DEBUG') else logging.INFO)
    app.logger.info('Lab ledger service starting in development mode')

Config.init_secrets(app)
db = SQLAlchemy(app, session_options={"autoflush": False})
migrate = Migrate(app, db)

auth_bp = Blueprint('auth', __name__)
csrf = CSRFProtect()
limiter = Limiter(key_func=get_remote_address, storage_uri=app.config['RATELIMIT_STORAGE_URI'])
csrf.init_app(app)
limiter.init_app(app)

login_manager = LoginManager(app)


# Roles
ROLE_SUDO = 'sudo'
ROLE_ADMIN = 'admin'
ROLE_RECEPTION = 'reception'
ROLE_PHLEBOTOMY = 'phlebotomy'
ROLE_LAB = 'lab'
ROLE_APPROVER = 'approver'
ROLE_B2B_CLIENT = 'b2b_client'

FINANCE_ROLES = (ROLE_SUDO, ROLE_ADMIN)
FRONT_DESK_ROLES = (ROLE_SUDO, ROLE_ADMIN, ROLE_RECEPTION)
STAFF_ROLES = (ROLE_SUDO, ROLE_ADMIN, ROLE_RECEPTION, ROLE_PHLEBOTOMY, ROLE_LAB, ROLE_APPROVER)

ENTRY_DEBIT = 'DEBIT'
ENTRY_CREDIT = 'CREDIT'
PAYMENT_MODE_CREDIT = 'CREDIT'


# Database Models
class User(db.Model, UserMixin):
    __tablename__ = 'user'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(255), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(50), nullable=False, default=ROLE_RECEPTION)
    is_active = db.Column(db.Boolean, default=True)
    # Set for b2b_client portal logins only
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), index=True)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    client = db.relationship('Client', backref='portal_users')

    def set_password(self, password):
        self.password = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password, password)

    def get_id(self):
        return str(self.id)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'role': self.role,
            'is_active': bool(self.is_active),
            'client_id': self.client_id,
            'last_login': _iso(self.last_login),
        }


class Client(db.Model):
    __tablename__ = 'clients'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(30), nullable=False, default='REFERRAL_LAB')
    # Derived from ledger_entries; only ledger operations write it
    balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    ledger_entries = db.relationship('LedgerEntry', backref='client', lazy=True)
    visits = db.relationship('Visit', backref='client', lazy=True)
    prices = db.relationship('ClientPrice', backref='client', lazy=True, cascade='all, delete-orphan')
    waivers = db.relationship('B2BWaiver', backref='client', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'balance': float(to_money(self.balance)),
        }


class TestTemplate(db.Model):
    __tablename__ = 'test_templates'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(100))
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    b2b_price = db.Column(db.Numeric(12, 2))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)


class ClientPrice(db.Model):
    __tablename__ = 'client_prices'
    __table_args__ = (
        db.UniqueConstraint('client_id', 'test_template_id', name='uq_client_prices_client_template'),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    test_template_id = db.Column(db.Integer, db.ForeignKey('test_templates.id'), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'clientId': self.client_id,
            'testTemplateId': self.test_template_id,
            'price': float(to_money(self.price)),
        }


class Patient(db.Model):
    __tablename__ = 'patients'

    id = db.Column(db.Integer, primary_key=True)
    salutation = db.Column(db.String(20))
    name = db.Column(db.String(200), nullable=False)
    age_years = db.Column(db.Integer)
    sex = db.Column(db.String(10))
    phone = db.Column(db.String(30))
    address = db.Column(db.Text)
    email = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'salutation': self.salutation,
            'name': self.name,
            'age_years': self.age_years,
            'sex': self.sex,
            'phone': self.phone,
            'address': self.address,
            'email': self.email,
        }


class Visit(db.Model):
    __tablename__ = 'visits'

    id = db.Column(db.Integer, primary_key=True)
    visit_code = db.Column(db.String(50), unique=True, nullable=False)
    patient_id = db.Column(db.Integer, db.ForeignKey('patients.id'), nullable=False)
    ref_customer_id = db.Column(db.Integer, db.ForeignKey('clients.id'), index=True)
    other_ref_customer = db.Column(db.String(200))
    registration_datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    total_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    amount_paid = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    due_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payment_mode = db.Column(db.String(30), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    patient = db.relationship('Patient', backref='visits')
    tests = db.relationship('VisitTest', backref='visit', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'visit_code': self.visit_code,
            'patient_id': self.patient_id,
            'ref_customer_id': self.ref_customer_id,
            'other_ref_customer': self.other_ref_customer,
            'registration_datetime': _iso(self.registration_datetime),
            'total_cost': float(to_money(self.total_cost)),
            'amount_paid': float(to_money(self.amount_paid)),
            'due_amount': float(to_money(self.due_amount)),
            'payment_mode': self.payment_mode,
            'created_at': _iso(self.created_at),
            'tests': [t.id for t in self.tests],
        }


class VisitTest(db.Model):
    __tablename__ = 'visit_tests'

    id = db.Column(db.Integer, primary_key=True)
    visit_id = db.Column(db.Integer, db.ForeignKey('visits.id'), nullable=False, index=True)
    test_template_id = db.Column(db.Integer, db.ForeignKey('test_templates.id'), nullable=False)
    status = db.Column(db.String(30), nullable=False, default='PENDING')
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)

    template = db.relationship('TestTemplate')


class LedgerEntry(db.Model):
    """Append-only. Rows are inserted through append_ledger_entry() and never edited."""
    __tablename__ = 'ledger_entries'
    __table_args__ = (
        db.CheckConstraint("type IN ('DEBIT', 'CREDIT')", name='ck_ledger_entries_type'),
        db.CheckConstraint('amount > 0', name='ck_ledger_entries_amount_positive'),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False, index=True)
    visit_id = db.Column(db.Integer, db.ForeignKey('visits.id'), index=True)
    type = db.Column(db.String(10), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    description = db.Column(db.String(500))
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'client_id': self.client_id,
            'visit_id': self.visit_id,
            'type': self.type,
            'amount': float(to_money(self.amount)),
            'description': self.description,
            'created_at': _iso(self.created_at),
        }


class B2BWaiver(db.Model):
    __tablename__ = 'b2b_waivers'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False, index=True)
    waiver_amount = db.Column(db.Numeric(12, 2), nullable=False)
    original_balance = db.Column(db.Numeric(12, 2), nullable=False)
    amount_received = db.Column(db.Numeric(12, 2), nullable=False)
    payment_mode = db.Column(db.String(30), nullable=False)
    reason = db.Column(db.String(255))
    description = db.Column(db.Text)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    creator = db.relationship('User', foreign_keys=[created_by])

    def to_dict(self):
        return {
            'id': self.id,
            'client_id': self.client_id,
            'client_name': self.client.name if self.client else None,
            'waiver_amount': float(to_money(self.waiver_amount)),
            'original_balance': float(to_money(self.original_balance)),
            'amount_received': float(to_money(self.amount_received)),
            'payment_mode': self.payment_mode,
            'reason': self.reason,
            'description': self.description,
            'created_by': self.created_by,
            'created_by_username': self.creator.username if self.creator else None,
            'created_at': _iso(self.created_at),
        }


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    username = db.Column(db.String(255))
    action = db.Column(db.String(50), nullable=False)
    table_name = db.Column(db.String(50))
    record_id = db.Column(db.Integer)
    description = db.Column(db.Text)
    old_values = db.Column(db.JSON)
    new_values = db.Column(db.JSON)
    ip_address = db.Column(db.String(50))
    user_agent = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'username': self.username,
            'action': self.action,
            'table_name': self.table_name,
            'record_id': self.record_id,
            'description': self.description,
            'old_values': self.old_values,
            'new_values': self.new_values,
            'ip_address': self.ip_address,
            'created_at': _iso(self.created_at),
        }


# Ledger errors
class LedgerError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class RecordNotFound(LedgerError):
    status_code = 404


class ClientNotFound(RecordNotFound):
    def __init__(self, client_id):
        super().__init__(f'Client {client_id} not found')
        self.client_id = client_id


class LedgerValidationError(LedgerError):
    status_code = 409

    def __init__(self, message, result=None):
        super().__init__(message)
        self.result = result


@login_manager.user_loader
def load_user(user_id):
    user = db.session.get(User, int(user_id))
    if user is None or not user.is_active:
        return None
    return user


@login_manager.unauthorized_handler
def unauthorized_json():
    return jsonify({'success': False, 'error': 'Authentication required'}), 401


def _iso(value):
    if value is None:
        return None
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return str(value)


def _current_user_id():
    if has_request_context() and current_user.is_authenticated:
        return current_user.id
    return None


def _jsonable(values):
    if not values:
        return values
    return {k: (float(v) if isinstance(v, Decimal) else v) for k, v in values.items()}


# Audit logging function
def log_audit(action, table=None, record_id=None, description=None,
              old_values=None, new_values=None, commit=True):
    """
    Record an audit trail entry.

    With commit=False the row joins the caller's transaction and is written
    (or discarded) together with the change it describes.
    """
    username = 'system'
    user_id = None
    ip_address = None
    user_agent = None
    if has_request_context():
        ip_address = request.remote_addr
        user_agent = (request.user_agent.string or '')[:255] or None
        if current_user.is_authenticated:
            user_id = current_user.id
            username = current_user.username

    log = AuditLog(
        user_id=user_id,
        username=username,
        action=action,
        table_name=table,
        record_id=record_id,
        description=description,
        old_values=_jsonable(old_values),
        new_values=_jsonable(new_values),
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=utcnow(),
    )
    if not commit:
        db.session.add(log)
        return log

    try:
        db.session.add(log)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to log audit trail: {str(e)}")
    return log


# JSON helpers

def roles_required_json(*roles):
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({'success': False, 'error': 'Authentication required'}), 401
            if current_user.role not in roles:
                return jsonify({'success': False, 'error': 'Unauthorized'}), 403
            return f(*args, **kwargs)
        return wrapper
    return decorator


admin_required_json = roles_required_json(*FINANCE_ROLES)


def bad_request(message):
    return jsonify({'success': False, 'error': message}), 400


def error_response(message, status):
    return jsonify({'success': False, 'error': message}), status


def success_response(data=None, status=200):
    payload = {'success': True}
    if data is not None:
        payload['data'] = data
    return jsonify(payload), status


def request_data():
    """JSON body from the SPA, or form fields from classic posts."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def pick(data, *keys, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def parse_bool(value):
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('1', 'true', 'on', 'yes')


def parse_date(value):
    if not value:
        return None
    try:
        return datetime.strptime(str(value).strip()[:10], '%Y-%m-%d').date()
    except ValueError:
        raise LedgerError('Invalid date format, expected YYYY-MM-DD')


def parse_datetime(value):
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        raise LedgerError('Invalid datetime format')
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def date_range(source):
    """(start, end_exclusive) datetimes from start_date/end_date; end date is inclusive."""
    start = parse_date(source.get('start_date'))
    end = parse_date(source.get('end_date'))
    start_dt = datetime.combine(start, datetime.min.time()) if start else None
    end_dt = datetime.combine(end + timedelta(days=1), datetime.min.time()) if end else None
    return start_dt, end_dt


def client_access_denied(client_id):
    """B2B portal users may only touch their own client."""
    if current_user.role == ROLE_B2B_CLIENT:
        if not current_user.client_id:
            return error_response('Client ID not linked to this login', 403)
        if int(client_id) != int(current_user.client_id):
            current_app.logger.warning(
                f"B2B client {current_user.client_id} attempted to access client {client_id}"
            )
            return error_response('Access denied: You can only view your own transactions', 403)
        return None
    if current_user.role not in STAFF_ROLES:
        return error_response('Unauthorized', 403)
    return None


def generate_random_string(length=6):
    """Helper function to generate random strings"""
    chars = string.ascii_uppercase + string.digits
    return ''.join(random.choice(chars) for _ in range(length))


def generate_visit_code():
    for _ in range(10):
        code = f"VIS-{get_lab_now().strftime('%Y%m%d')}-{generate_random_string(5)}"
        if not Visit.query.filter_by(visit_code=code).first():
            return code
    raise LedgerError('Could not allocate a visit code', 500)


# =====================
# LEDGER CORE
# =====================

def get_client_for_update(client_id):
    client = db.session.get(Client, client_id, with_for_update=True)
    if client is None:
        raise ClientNotFound(client_id)
    return client


def append_ledger_entry(client, entry_type, amount, description, visit_id=None):
    """Append a DEBIT/CREDIT row and move the client's stored balance with it.

    The caller holds the client row (see get_client_for_update) and commits.
    """
    if entry_type not in (ENTRY_DEBIT, ENTRY_CREDIT):
        raise LedgerError(f'Invalid ledger entry type: {entry_type}')
    amount = to_money(amount)
    if amount <= 0:
        raise LedgerError('Ledger amount must be positive')

    entry = LedgerEntry(
        client_id=client.id,
        visit_id=visit_id,
        type=entry_type,
        amount=amount,
        description=(description or '')[:500] or None,
        created_by=_current_user_id(),
        created_at=utcnow(),
    )
    current = to_money(client.balance)
    client.balance = current + amount if entry_type == ENTRY_DEBIT else current - amount
    client.updated_at = utcnow()
    db.session.add(entry)
    return entry


def enforce_strict_validation(client_id):
    if current_app.config.get('LEDGER_STRICT_VALIDATION'):
        db.session.flush()
        validate_ledger_or_raise(client_id)


def record_client_payment(client_id, amount, description=None):
    """CREDIT a client payment and apply it to the oldest outstanding credit visits first.

    Only CREDIT-mode visits carry a DEBIT, so only their dues make up the balance.
    """
    amount, err = parse_amount(amount)
    if err:
        raise LedgerError(err)

    client = get_client_for_update(client_id)
    previous = to_money(client.balance)
    if amount > previous:
        raise LedgerError('Payment amount exceeds outstanding balance')

    entry = append_ledger_entry(client, ENTRY_CREDIT, amount, (description or '').strip() or 'Payment received')

    outstanding = Visit.query.filter(
        Visit.ref_customer_id == client.id,
        Visit.payment_mode == PAYMENT_MODE_CREDIT,
        Visit.due_amount > 0,
    ).order_by(Visit.registration_datetime.asc(), Visit.id.asc()).all()
    applied = allocate_payment(amount, [(v, to_money(v.due_amount)) for v in outstanding])
    for visit, portion in applied:
        visit.amount_paid = to_money(visit.amount_paid) + portion
        visit.due_amount = to_money(visit.due_amount) - portion
        visit.updated_at = utcnow()

    db.session.flush()
    symbol = current_app.config['CURRENCY_SYMBOL']
    log_audit(
        'b2b_payment_received',
        table='clients',
        record_id=client.id,
        description=f"Payment of {symbol}{amount:.2f} received for client ID {client.id}. {description or ''}".strip(),
        old_values={'balance': previous},
        new_values={'balance': to_money(client.balance), 'visits_applied': len(applied)},
        commit=False,
    )
    enforce_strict_validation(client.id)
    return entry, client


def settle_client_balance(client_id, payment_mode, description, received_amount=None):
    """Close out a client's balance in one transaction.

    Marks every unpaid visit as paid, CREDITs the money received and, when
    less than the balance was received, records the shortfall as a waiver
    with its own CREDIT. The caller commits.
    """
    if not payment_mode:
        raise LedgerError('Payment mode is required')
    if payment_mode not in current_app.config['PAYMENT_MODES']:
        raise LedgerError('Invalid payment mode')
    if not description or not str(description).strip():
        raise LedgerError('Description is required')
    description = str(description).strip()

    client = get_client_for_update(client_id)
    previous = to_money(client.balance)
    if previous == 0:
        return {
            'message': 'Client balance is already zero',
            'previousBalance': 0.0,
            'newBalance': 0.0,
        }

    try:
        plan = plan_settlement(previous, received_amount)
    except ValueError as e:
        raise LedgerError(str(e))

    unpaid = Visit.query.filter(Visit.ref_customer_id == client.id, Visit.due_amount > 0).all()
    total_due = sum((to_money(v.due_amount) for v in unpaid), ZERO)
    for visit in unpaid:
        visit.amount_paid = to_money(visit.total_cost)
        visit.due_amount = ZERO
        visit.updated_at = utcnow()

    append_ledger_entry(client, ENTRY_CREDIT, plan.amount_received, payment_description(payment_mode, description))

    waiver = None
    if plan.has_waiver:
        reason = parse_waiver_reason(description)
        waiver = B2BWaiver(
            client_id=client.id,
            waiver_amount=plan.waiver_amount,
            original_balance=plan.previous_balance,
            amount_received=plan.amount_received,
            payment_mode=payment_mode,
            reason=reason,
            description=description,
            created_by=_current_user_id(),
            created_at=utcnow(),
        )
        db.session.add(waiver)
        append_ledger_entry(client, ENTRY_CREDIT, plan.waiver_amount, waiver_description(reason))

    client.balance = ZERO
    db.session.flush()

    symbol = current_app.config['CURRENCY_SYMBOL']
    details = f"Settled balance of {symbol}{previous:.2f} for {client.name}."
    if waiver is not None:
        details += f" Received: {symbol}{plan.amount_received:.2f}, Waiver: {symbol}{plan.waiver_amount:.2f}."
    details += f" Payment Mode: {payment_mode}. {description}. {len(unpaid)} visit(s) marked as paid."
    log_audit(
        'b2b_balance_settled',
        table='clients',
        record_id=client.id,
        description=details,
        old_values={'balance': previous, 'unpaidVisits': len(unpaid), 'totalDue': total_due},
        new_values={
            'balance': ZERO,
            'unpaidVisits': 0,
            'totalDue': ZERO,
            'amountReceived': plan.amount_received,
            'waiverAmount': plan.waiver_amount if waiver is not None else ZERO,
            'paymentMode': payment_mode,
        },
        commit=False,
    )
    enforce_strict_validation(client.id)

    return {
        'message': f'Settlement completed for {client.name}',
        'previousBalance': float(previous),
        'newBalance': 0.0,
        'amountReceived': float(plan.amount_received),
        'waiverAmount': float(plan.waiver_amount) if waiver is not None else 0.0,
        'waiverId': waiver.id if waiver is not None else None,
        'visitsUpdated': len(unpaid),
        'paymentMode': payment_mode,
        'description': description,
    }


# =====================
# LEDGER VALIDATION
# =====================

def validate_client_ledger(client_id):
    """Cross-check a client's stored balance against its ledger history."""
    client = db.session.get(Client, client_id)
    if client is None:
        raise ClientNotFound(client_id)

    symbol = current_app.config['CURRENCY_SYMBOL']
    tolerance = Decimal(str(current_app.config['LEDGER_TOLERANCE']))
    stored = to_money(client.balance)

    entry_count, total_debits, total_credits = db.session.query(
        func.count(LedgerEntry.id),
        func.coalesce(func.sum(case((LedgerEntry.type == ENTRY_DEBIT, LedgerEntry.amount), else_=0)), 0),
        func.coalesce(func.sum(case((LedgerEntry.type == ENTRY_CREDIT, LedgerEntry.amount), else_=0)), 0),
    ).filter(LedgerEntry.client_id == client.id).one()

    total_debits = to_money(total_debits)
    total_credits = to_money(total_credits)
    calculated = total_debits - total_credits
    difference = abs(calculated - stored)
    is_valid = difference < tolerance

    warnings = []
    if not is_valid:
        warnings.append(
            f"Balance mismatch: Stored={symbol}{stored:.2f}, Calculated={symbol}{calculated:.2f}, "
            f"Difference={symbol}{difference:.2f}"
        )

    orphaned = db.session.query(func.count(LedgerEntry.id)).outerjoin(
        Visit, LedgerEntry.visit_id == Visit.id
    ).filter(
        LedgerEntry.client_id == client.id,
        LedgerEntry.visit_id.isnot(None),
        Visit.id.is_(None),
    ).scalar() or 0
    if orphaned:
        warnings.append(f"Found {orphaned} orphaned ledger entries (referencing deleted visits)")

    missing_debits = db.session.query(func.count(Visit.id)).outerjoin(
        LedgerEntry, and_(LedgerEntry.visit_id == Visit.id, LedgerEntry.type == ENTRY_DEBIT)
    ).filter(
        Visit.ref_customer_id == client.id,
        Visit.payment_mode == PAYMENT_MODE_CREDIT,
        LedgerEntry.id.is_(None),
    ).scalar() or 0
    if missing_debits:
        warnings.append(f"Found {missing_debits} credit visits without ledger entries")

    total_visit_cost = to_money(db.session.query(
        func.coalesce(func.sum(Visit.total_cost), 0)
    ).filter(
        Visit.ref_customer_id == client.id,
        Visit.payment_mode == PAYMENT_MODE_CREDIT,
    ).scalar())
    if abs(total_debits - total_visit_cost) > tolerance:
        warnings.append(
            f"Visit cost mismatch: Total visit costs={symbol}{total_visit_cost:.2f}, "
            f"Total debits={symbol}{total_debits:.2f}"
        )

    return LedgerValidationResult(
        is_valid=is_valid,
        client_id=client.id,
        client_name=client.name,
        stored_balance=stored,
        calculated_balance=calculated,
        difference=difference,
        total_debits=total_debits,
        total_credits=total_credits,
        entry_count=int(entry_count or 0),
        warnings=warnings,
    )


def validate_all_ledgers():
    """Validate every B2B client; a client that fails to validate is logged and skipped."""
    client_ids = [
        cid for (cid,) in db.session.query(Client.id).filter(
            Client.type.in_(current_app.config['B2B_CLIENT_TYPES'])
        ).order_by(Client.id).all()
    ]
    results = []
    for client_id in client_ids:
        try:
            results.append(validate_client_ledger(client_id))
        except (LedgerError, SQLAlchemyError) as e:
            current_app.logger.error(f"Error validating ledger for client {client_id}: {e}", exc_info=True)
    return results


def fix_client_balance(client_id):
    """Overwrite the stored balance with the ledger-derived one. Returns (result, changed)."""
    validation = validate_client_ledger(client_id)
    if validation.is_valid:
        current_app.logger.info(f"Client {client_id} balance is already correct")
        return validation, False

    client = get_client_for_update(client_id)
    old_balance = to_money(client.balance)
    client.balance = validation.calculated_balance
    client.updated_at = utcnow()
    current_app.logger.warning(
        f"Fixing balance for client {client_id}: {old_balance:.2f} -> {validation.calculated_balance:.2f}"
    )
    log_audit(
        'ledger_balance_fixed',
        table='clients',
        record_id=client.id,
        description=f"Balance reset from ledger for {client.name}",
        old_values={'balance': old_balance},
        new_values={'balance': validation.calculated_balance},
        commit=False,
    )
    return validation, True


def validate_ledger_or_raise(client_id):
    validation = validate_client_ledger(client_id)
    if not validation.is_valid:
        current_app.logger.error(f"LEDGER VALIDATION FAILED: {validation.to_dict()}")
        raise LedgerValidationError(
            f"Ledger validation failed for client {client_id}: {', '.join(validation.warnings)}",
            result=validation,
        )
    if validation.warnings:
        current_app.logger.warning(f"Ledger warnings for client {client_id}: {validation.warnings}")
    return validation


def scheduled_ledger_audit():
    """Nightly reconciliation run."""
    with app.app_context():
        try:
            results = validate_all_ledgers()
            counts = summarize(results)
            if counts['invalid']:
                app.logger.warning(generate_validation_report(results, app.config['CURRENCY_SYMBOL']))
            else:
                app.logger.info(f"Scheduled ledger audit: {counts['total']} client ledger(s) valid")
            return counts
        except Exception as e:
            app.logger.error(f'Error in scheduled ledger audit: {str(e)}', exc_info=True)
            return None


def start_ledger_audit_scheduler():
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        scheduled_ledger_audit, 'cron',
        hour=app.config['LEDGER_AUDIT_HOUR'], minute=0,
        id='ledger_audit', replace_existing=True,
    )
    scheduler.start()
    return scheduler


# =====================
# VISIT LEDGER HOOKS
# =====================

def resolve_test_price(template, client_id=None):
    """Client price list first, then the B2B price for referred visits, then list price."""
    if client_id:
        custom = ClientPrice.query.filter_by(client_id=client_id, test_template_id=template.id).first()
        if custom is not None:
            return to_money(custom.price)
        if template.b2b_price is not None:
            return to_money(template.b2b_price)
    return to_money(template.price)


def create_visit(data):
    patient_id = pick(data, 'patient_id', 'patientId')
    if not patient_id:
        raise LedgerError('patient_id is required')
    patient = db.session.get(Patient, int(patient_id))
    if patient is None:
        raise RecordNotFound('Patient not found')

    client = None
    ref_customer_id = pick(data, 'ref_customer_id', 'refCustomerId')
    if ref_customer_id:
        client = get_client_for_update(int(ref_customer_id))

    payment_mode = pick(data, 'payment_mode', 'paymentMode')
    if payment_mode not in current_app.config['VISIT_PAYMENT_MODES']:
        raise LedgerError('Valid payment mode is required')
    if payment_mode == PAYMENT_MODE_CREDIT and client is None:
        raise LedgerError('Credit visits must be referred by a B2B client')

    template_ids = pick(data, 'test_template_ids', 'testTemplateIds', default=[]) or []
    templates = []
    for template_id in template_ids:
        template = db.session.get(TestTemplate, int(template_id))
        if template is None:
            raise RecordNotFound(f'Test template with ID {template_id} not found')
        templates.append(template)

    priced = [(t, resolve_test_price(t, client.id if client else None)) for t in templates]
    if priced:
        total_cost = sum((p for _, p in priced), ZERO)
    else:
        total_cost, err = parse_amount(pick(data, 'total_cost', 'totalCost'), allow_zero=True)
        if err:
            raise LedgerError(f'Total cost: {err}')

    amount_paid, err = parse_amount(pick(data, 'amount_paid', 'amountPaid', default=0), allow_zero=True)
    if err:
        raise LedgerError(f'Amount paid: {err}')
    if amount_paid > total_cost:
        raise LedgerError('Amount paid cannot exceed total cost')
    if payment_mode == PAYMENT_MODE_CREDIT and total_cost <= 0:
        raise LedgerError('Credit visits must have a positive total cost')

    visit = Visit(
        visit_code=generate_visit_code(),
        patient_id=patient.id,
        ref_customer_id=client.id if client else None,
        other_ref_customer=pick(data, 'other_ref_customer', 'otherRefCustomer'),
        registration_datetime=parse_datetime(pick(data, 'registration_datetime', 'registrationDatetime')) or utcnow(),
        total_cost=total_cost,
        amount_paid=amount_paid,
        due_amount=total_cost - amount_paid,
        payment_mode=payment_mode,
        created_at=utcnow(),
    )
    db.session.add(visit)
    for template, price in priced:
        visit.tests.append(VisitTest(test_template_id=template.id, price=price, status='PENDING'))
    db.session.flush()

    if client is not None and payment_mode == PAYMENT_MODE_CREDIT:
        append_ledger_entry(client, ENTRY_DEBIT, total_cost, f"Visit {visit.visit_code} - {patient.name}", visit_id=visit.id)
        if amount_paid > 0:
            append_ledger_entry(
                client, ENTRY_CREDIT, amount_paid,
                f"Advance received for visit {visit.visit_code}", visit_id=visit.id,
            )

    log_audit(
        'create',
        table='visits',
        record_id=visit.id,
        description=f"Visit {visit.visit_code} registered for {patient.name}",
        new_values={'total_cost': total_cost, 'amount_paid': amount_paid, 'payment_mode': payment_mode,
                    'ref_customer_id': visit.ref_customer_id},
        commit=False,
    )
    if client is not None:
        enforce_strict_validation(client.id)
    return visit


def collect_visit_due(visit_id, amount, payment_mode):
    visit = db.session.get(Visit, visit_id)
    if visit is None:
        raise RecordNotFound('Visit not found')

    amount, err = parse_amount(amount)
    if err:
        raise LedgerError('Valid amount is required')
    if payment_mode not in current_app.config['PAYMENT_MODES']:
        raise LedgerError('Valid payment mode is required')

    due = to_money(visit.due_amount)
    if amount > due:
        raise LedgerError('Amount exceeds due amount')

    visit.amount_paid = to_money(visit.amount_paid) + amount
    visit.due_amount = due - amount
    visit.updated_at = utcnow()

    if visit.ref_customer_id and visit.payment_mode == PAYMENT_MODE_CREDIT:
        # Credit visits stay CREDIT so reconciliation still pairs them with their DEBIT
        client = get_client_for_update(visit.ref_customer_id)
        append_ledger_entry(
            client, ENTRY_CREDIT, amount,
            f"Due collected for visit {visit.visit_code} via {payment_mode}", visit_id=visit.id,
        )
    else:
        visit.payment_mode = payment_mode

    symbol = current_app.config['CURRENCY_SYMBOL']
    log_audit(
        'collect_due_payment',
        table='visits',
        record_id=visit.id,
        description=(f"Collected {symbol}{amount:.2f} via {payment_mode} for visit {visit.visit_code}. "
                     f"New due: {symbol}{visit.due_amount:.2f}"),
        old_values={'due_amount': due},
        new_values={'due_amount': to_money(visit.due_amount)},
        commit=False,
    )
    if visit.ref_customer_id:
        enforce_strict_validation(visit.ref_customer_id)
    return visit, amount


# =====================
# INVOICES
# =====================

def build_invoice(client_id, source):
    client = Client.query.filter_by(id=client_id, type='REFERRAL_LAB').first()
    if client is None:
        raise RecordNotFound('B2B client not found')

    start_dt, end_dt = date_range(source)
    include_paid = parse_bool(source.get('include_paid'))

    query = Visit.query.filter(Visit.ref_customer_id == client.id)
    if start_dt:
        query = query.filter(Visit.registration_datetime >= start_dt)
    if end_dt:
        query = query.filter(Visit.registration_datetime < end_dt)
    if not include_paid:
        query = query.filter(Visit.due_amount > 0)
    visits = query.order_by(Visit.registration_datetime.asc(), Visit.id.asc()).all()

    rows = []
    for v in visits:
        rows.append({
            'id': v.id,
            'visitCode': v.visit_code,
            'registrationDate': _iso(v.registration_datetime),
            'totalCost': float(to_money(v.total_cost)),
            'amountPaid': float(to_money(v.amount_paid)),
            'dueAmount': float(to_money(v.due_amount)),
            'patientName': v.patient.name if v.patient else None,
            'testNames': [t.template.name for t in v.tests if t.template is not None],
        })

    return {
        'client': {
            'id': client.id,
            'name': client.name,
            'currentBalance': float(to_money(client.balance)),
        },
        'invoicePeriod': {
            'startDate': source.get('start_date') or None,
            'endDate': source.get('end_date') or None,
        },
        'visits': rows,
        'summary': {
            'totalVisits': len(visits),
            'totalAmount': float(sum((to_money(v.total_cost) for v in visits), ZERO)),
            'totalPaid': float(sum((to_money(v.amount_paid) for v in visits), ZERO)),
            'totalDue': float(sum((to_money(v.due_amount) for v in visits), ZERO)),
        },
        'generatedAt': datetime.now(timezone.utc).isoformat(),
    }


# =====================
# AUTH ROUTES
# =====================

@app.route('/api/csrf-token')
def csrf_token():
    return jsonify({'csrfToken': generate_csrf()})


@auth_bp.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    data = request_data()
    identifier = (pick(data, 'username', 'email', default='') or '').strip()
    password = pick(data, 'password', default='') or ''
    if not identifier or not password:
        return bad_request('Username and password are required')

    user = User.query.filter((User.username == identifier) | (User.email == identifier)).first()
    if not user or not user.is_active or not user.check_password(password):
        current_app.logger.warning(f"Failed login attempt for {identifier}")
        return error_response('Invalid credentials', 401)

    login_user(user)
    user.last_login = utcnow()
    db.session.commit()
    log_audit('login', table='user', record_id=user.id)
    return jsonify({'success': True, 'user': user.to_dict()})


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    log_audit('logout', table='user', record_id=current_user.id)
    logout_user()
    return jsonify({'success': True})


@auth_bp.route('/me')
@login_required
def me():
    return jsonify({'success': True, 'user': current_user.to_dict()})


# =====================
# CLIENT ROUTES
# =====================

@app.route('/api/clients', methods=['GET'])
@login_required
def list_clients():
    query = Client.query
    if current_user.role == ROLE_B2B_CLIENT:
        query = query.filter(Client.id == current_user.client_id)
    elif current_user.role not in STAFF_ROLES:
        return error_response('Unauthorized', 403)
    return jsonify([c.to_dict() for c in query.order_by(Client.id).all()])


@app.route('/api/clients', methods=['POST'])
@admin_required_json
def create_client():
    data = request_data()
    name = (pick(data, 'name', default='') or '').strip()
    client_type = (pick(data, 'type', default='REFERRAL_LAB') or '').strip().upper()
    if not name:
        return bad_request('Name is required')
    if client_type not in current_app.config['CLIENT_TYPES']:
        return bad_request('Invalid client type')
    try:
        client = Client(name=name, type=client_type, balance=ZERO)
        db.session.add(client)
        db.session.commit()
        log_audit('create', table='clients', record_id=client.id, new_values={'name': name, 'type': client_type})
        return jsonify(client.to_dict()), 201
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"create_client failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)


@app.route('/api/clients/<int:client_id>', methods=['GET'])
@login_required
def get_client(client_id):
    denied = client_access_denied(client_id)
    if denied:
        return denied
    client = db.session.get(Client, client_id)
    if client is None:
        return error_response('Client not found', 404)
    return jsonify(client.to_dict())


@app.route('/api/clients/<int:client_id>', methods=['PATCH'])
@admin_required_json
def update_client(client_id):
    client = db.session.get(Client, client_id)
    if client is None:
        return error_response('Client not found', 404)
    data = request_data()
    if 'balance' in data:
        return bad_request('Balance is derived from the ledger; use payment, settlement or fix-balance')

    old_values = {'name': client.name, 'type': client.type}
    name = pick(data, 'name')
    client_type = pick(data, 'type')
    if name is not None:
        name = str(name).strip()
        if not name:
            return bad_request('Name cannot be empty')
        client.name = name
    if client_type is not None:
        client_type = str(client_type).strip().upper()
        if client_type not in current_app.config['CLIENT_TYPES']:
            return bad_request('Invalid client type')
        client.type = client_type
    try:
        db.session.commit()
        log_audit('update', table='clients', record_id=client.id, old_values=old_values,
                  new_values={'name': client.name, 'type': client.type})
        return jsonify(client.to_dict())
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"update_client failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)


@app.route('/api/clients/<int:client_id>', methods=['DELETE'])
@admin_required_json
def delete_client(client_id):
    client = db.session.get(Client, client_id)
    if client is None:
        return error_response('Client not found', 404)

    has_entries = db.session.query(LedgerEntry.id).filter_by(client_id=client_id).first() is not None
    has_visits = db.session.query(Visit.id).filter_by(ref_customer_id=client_id).first() is not None
    if has_entries or has_visits:
        return error_response('Client has ledger history or visits and cannot be deleted', 409)
    try:
        name = client.name
        User.query.filter_by(client_id=client_id).delete()
        db.session.delete(client)
        db.session.commit()
        log_audit('delete', table='clients', record_id=client_id, old_values={'name': name})
        return jsonify({'success': True, 'message': 'Client deleted successfully'})
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"delete_client failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)


@app.route('/api/clients/<int:client_id>/prices', methods=['GET'])
@login_required
def get_client_prices(client_id):
    denied = client_access_denied(client_id)
    if denied:
        return denied
    prices = ClientPrice.query.filter_by(client_id=client_id).order_by(ClientPrice.test_template_id).all()
    return jsonify([p.to_dict() for p in prices])


@app.route('/api/clients/<int:client_id>/prices', methods=['POST'])
@admin_required_json
def set_client_prices(client_id):
    client = db.session.get(Client, client_id)
    if client is None:
        return error_response('Client not found', 404)
    data = request_data()
    prices = data.get('prices')
    if not isinstance(prices, list):
        return bad_request('prices must be a list')

    parsed = {}
    for item in prices:
        template_id = pick(item or {}, 'testTemplateId', 'test_template_id')
        if template_id is None or db.session.get(TestTemplate, int(template_id)) is None:
            return error_response(f'Test template with ID {template_id} not found', 404)
        price, err = parse_amount(pick(item, 'price'), allow_zero=True)
        if err:
            return bad_request(f'Invalid price for test {template_id}')
        parsed[int(template_id)] = price

    try:
        ClientPrice.query.filter_by(client_id=client_id).delete()
        for template_id, price in parsed.items():
            db.session.add(ClientPrice(client_id=client_id, test_template_id=template_id, price=price))
        log_audit('update', table='client_prices', record_id=client_id,
                  new_values={'price_count': len(parsed)}, commit=False)
        db.session.commit()
        return jsonify({'success': True, 'message': 'Client prices updated', 'count': len(parsed)})
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"set_client_prices failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)


@app.route('/api/clients/<int:client_id>/ledger', methods=['GET'])
@login_required
def get_client_ledger(client_id):
    denied = client_access_denied(client_id)
    if denied:
        return denied
    if db.session.get(Client, client_id) is None:
        return error_response('Client not found', 404)

    entries = LedgerEntry.query.filter_by(client_id=client_id).order_by(
        LedgerEntry.created_at.asc(), LedgerEntry.id.asc()
    ).all()
    codes = dict(
        db.session.query(Visit.id, Visit.visit_code).filter(
            Visit.id.in_(sorted({e.visit_id for e in entries if e.visit_id}))
        ).all()
    ) if entries else {}

    running = ZERO
    rows = []
    for entry in entries:
        amount = to_money(entry.amount)
        running = running + amount if entry.type == ENTRY_DEBIT else running - amount
        row = entry.to_dict()
        row['visit_code'] = codes.get(entry.visit_id)
        row['balance_after'] = float(running)
        rows.append(row)
    rows.reverse()
    current_app.logger.debug(f"Found {len(rows)} ledger entries for client {client_id}")
    return jsonify(rows)


@app.route('/api/clients/<int:client_id>/payment', methods=['POST'])
@roles_required_json(*FRONT_DESK_ROLES)
def add_client_payment(client_id):
    data = request_data()
    try:
        entry, client = record_client_payment(client_id, pick(data, 'amount'), pick(data, 'description'))
        db.session.commit()
        return jsonify({
            'success': True,
            'ledgerEntry': entry.to_dict(),
            'newBalance': float(to_money(client.balance)),
        })
    except LedgerError as e:
        db.session.rollback()
        return error_response(e.message, e.status_code)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"add_client_payment failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)


@app.route('/api/clients/<int:client_id>/settle', methods=['POST'])
@admin_required_json
def settle_client(client_id):
    data = request_data()
    try:
        outcome = settle_client_balance(
            client_id,
            pick(data, 'paymentMode', 'payment_mode'),
            pick(data, 'description'),
            pick(data, 'receivedAmount', 'received_amount'),
        )
        if 'amountReceived' in outcome:
            db.session.commit()
        else:
            db.session.rollback()
        return jsonify(dict(success=True, **outcome))
    except LedgerError as e:
        db.session.rollback()
        return error_response(e.message, e.status_code)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"settle_client failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)


@app.route('/api/clients/<int:client_id>/validate-ledger', methods=['GET'])
@roles_required_json(*STAFF_ROLES)
def validate_ledger(client_id):
    try:
        validation = validate_client_ledger(client_id)
    except LedgerError as e:
        return error_response(e.message, e.status_code)
    if validation.has_issues:
        current_app.logger.warning(f"Ledger validation issues: {validation.to_dict()}")
    return jsonify(validation.to_dict())


@app.route('/api/clients/validate-all-ledgers', methods=['GET'])
@admin_required_json
def validate_all_ledgers_route():
    results = validate_all_ledgers()
    report = generate_validation_report(results, current_app.config['CURRENCY_SYMBOL'])
    current_app.logger.info(report)
    return jsonify({
        'results': [r.to_dict() for r in results],
        'report': report,
        'summary': summarize(results),
    })


@app.route('/api/clients/<int:client_id>/fix-balance', methods=['POST'])
@admin_required_json
def fix_balance(client_id):
    try:
        validation, changed = fix_client_balance(client_id)
        db.session.commit()
        return jsonify({
            'success': True,
            'changed': changed,
            'previousBalance': float(validation.stored_balance),
            'newBalance': float(validation.calculated_balance),
        })
    except LedgerError as e:
        db.session.rollback()
        return error_response(e.message, e.status_code)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"fix_balance failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)


@app.route('/api/clients/<int:client_id>/setup-login', methods=['POST'])
@admin_required_json
def setup_client_login(client_id):
    client = db.session.get(Client, client_id)
    if client is None:
        return error_response('Client not found', 404)
    data = request_data()
    password = pick(data, 'password', default='') or ''
    if not password:
        return bad_request('Password is required')

    user = User.query.filter_by(client_id=client_id, role=ROLE_B2B_CLIENT).first()
    try:
        if user is None:
            username = (pick(data, 'username', default='') or '').strip() or client.name
            user = User(username=username, role=ROLE_B2B_CLIENT, client_id=client_id)
            db.session.add(user)
        user.set_password(password)
        user.is_active = True
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return error_response('Username is already taken', 409)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"setup_client_login failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)

    log_audit('setup_client_login', table='user', record_id=user.id, new_values={'client_id': client_id})
    return jsonify({
        'success': True,
        'message': 'Client login credentials set up successfully',
        'clientId': client_id,
        'username': user.username,
        'isActive': True,
    })


@app.route('/api/clients/<int:client_id>/login-status', methods=['GET'])
@admin_required_json
def client_login_status(client_id):
    client = db.session.get(Client, client_id)
    if client is None:
        return error_response('Client not found', 404)
    user = User.query.filter_by(client_id=client_id, role=ROLE_B2B_CLIENT).first()
    if user is None:
        return jsonify({'clientId': client_id, 'hasLogin': False, 'isActive': False})
    return jsonify({
        'clientId': client_id,
        'name': client.name,
        'type': client.type,
        'username': user.username,
        'hasLogin': True,
        'isActive': bool(user.is_active),
        'lastLogin': _iso(user.last_login),
    })


@app.route('/api/clients/<int:client_id>/disable-login', methods=['POST'])
@admin_required_json
def disable_client_login(client_id):
    user = User.query.filter_by(client_id=client_id, role=ROLE_B2B_CLIENT).first()
    if user is None:
        return error_response('Client login not found', 404)
    user.is_active = False
    db.session.commit()
    log_audit('disable_client_login', table='user', record_id=user.id)
    return jsonify({'success': True, 'message': 'Client login disabled', 'clientId': client_id, 'isActive': False})


# =====================
# PATIENT & VISIT ROUTES
# =====================

@app.route('/api/patients', methods=['POST'])
@roles_required_json(*FRONT_DESK_ROLES)
def create_patient():
    data = request_data()
    name = (pick(data, 'name', default='') or '').strip()
    if not name:
        return bad_request('Name is required')
    age = pick(data, 'age_years', 'ageYears')
    try:
        patient = Patient(
            salutation=pick(data, 'salutation'),
            name=name,
            age_years=int(age) if age not in (None, '') else None,
            sex=pick(data, 'sex'),
            phone=pick(data, 'phone'),
            address=pick(data, 'address'),
            email=pick(data, 'email'),
        )
    except (TypeError, ValueError):
        return bad_request('Invalid age')
    db.session.add(patient)
    db.session.commit()
    return jsonify(patient.to_dict()), 201


@app.route('/api/patients/<int:patient_id>', methods=['GET'])
@roles_required_json(*STAFF_ROLES)
def get_patient(patient_id):
    patient = db.session.get(Patient, patient_id)
    if patient is None:
        return error_response('Patient not found', 404)
    return jsonify(patient.to_dict())


@app.route('/api/visits', methods=['POST'])
@roles_required_json(*FRONT_DESK_ROLES)
def create_visit_route():
    try:
        visit = create_visit(request_data())
        db.session.commit()
        return jsonify(visit.to_dict()), 201
    except LedgerError as e:
        db.session.rollback()
        return error_response(e.message, e.status_code)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"create_visit failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)


@app.route('/api/visits/<int:visit_id>', methods=['GET'])
@login_required
def get_visit(visit_id):
    visit = db.session.get(Visit, visit_id)
    if visit is None:
        return error_response('Visit not found', 404)
    if current_user.role == ROLE_B2B_CLIENT and visit.ref_customer_id != current_user.client_id:
        current_app.logger.warning(
            f"B2B client {current_user.client_id} attempted to access visit {visit_id}"
        )
        return error_response('Access denied: You can only view your own visits', 403)
    if current_user.role != ROLE_B2B_CLIENT and current_user.role not in STAFF_ROLES:
        return error_response('Unauthorized', 403)
    payload = visit.to_dict()
    payload['patient'] = visit.patient.to_dict() if visit.patient else None
    payload['b2bClient'] = visit.client.to_dict() if visit.client else None
    return jsonify(payload)


@app.route('/api/visits/<int:visit_id>/collect-due', methods=['POST'])
@roles_required_json(*FRONT_DESK_ROLES)
def collect_due(visit_id):
    data = request_data()
    try:
        visit, amount = collect_visit_due(visit_id, pick(data, 'amount'), pick(data, 'payment_mode', 'paymentMode'))
        db.session.commit()
        return jsonify({
            'success': True,
            'message': 'Payment collected successfully',
            'visit': visit.to_dict(),
            'amount_collected': float(amount),
            'new_due_amount': float(to_money(visit.due_amount)),
        })
    except LedgerError as e:
        db.session.rollback()
        return error_response(e.message, e.status_code)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"collect_due failed: {str(e)}", exc_info=True)
        return error_response('Internal server error', 500)


# =====================
# B2B FINANCIAL ROUTES
# =====================

@app.route('/api/b2b-financial/summary', methods=['GET'])
@admin_required_json
def b2b_financial_summary():
    try:
        start_dt, end_dt = date_range(request.args)
    except LedgerError as e:
        return bad_request(e.message)

    join_on = [Visit.ref_customer_id == Client.id]
    if start_dt:
        join_on.append(Visit.registration_datetime >= start_dt)
    if end_dt:
        join_on.append(Visit.registration_datetime < end_dt)
    status = request.args.get('status')
    if status == 'paid':
        join_on.append(Visit.due_amount == 0)
    elif status == 'unpaid':
        join_on.append(Visit.due_amount > 0)
    elif status == 'partial':
        join_on.append(and_(Visit.amount_paid > 0, Visit.due_amount > 0))

    query = db.session.query(
        Client.id,
        Client.name,
        Client.balance,
        func.count(func.distinct(Visit.id)),
        func.coalesce(func.sum(Visit.total_cost), 0),
        func.coalesce(func.sum(Visit.amount_paid), 0),
        func.coalesce(func.sum(Visit.due_amount), 0),
        func.min(Visit.registration_datetime),
        func.max(Visit.registration_datetime),
    ).outerjoin(Visit, and_(*join_on)).filter(Client.type == 'REFERRAL_LAB')

    client_id = request.args.get('client_id')
    if client_id and client_id != 'all':
        try:
            query = query.filter(Client.id == int(client_id))
        except ValueError:
            return bad_request('Invalid client_id')

    rows = query.group_by(Client.id, Client.name, Client.balance).order_by(Client.name).all()
    return jsonify([{
        'clientId': cid,
        'clientName': name,
        'currentBalance': float(to_money(balance)),
        'totalVisits': int(visits or 0),
        'totalBilled': float(to_money(billed)),
        'totalPaid': float(to_money(paid)),
        'totalDue': float(to_money(due)),
        'firstVisitDate': _iso(first),
        'lastVisitDate': _iso(last),
    } for cid, name, balance, visits, billed, paid, due, first, last in rows])


@app.route('/api/b2b-financial/client/<int:client_id>/transactions', methods=['GET'])
@login_required
def b2b_client_transactions(client_id):
    denied = client_access_denied(client_id)
    if denied:
        return denied
    try:
        start_dt, end_dt = date_range(request.args)
    except LedgerError as e:
        return bad_request(e.message)
    txn_type = (request.args.get('type') or '').upper()

    transactions = []
    if txn_type in ('', 'VISIT'):
        query = Visit.query.filter(Visit.ref_customer_id == client_id)
        if start_dt:
            query = query.filter(Visit.registration_datetime >= start_dt)
        if end_dt:
            query = query.filter(Visit.registration_datetime < end_dt)
        for v in query.all():
            transactions.append({
                'transactionType': 'VISIT',
                'transactionId': v.id,
                'reference': v.visit_code,
                'transactionDate': v.registration_datetime,
                'amount': float(to_money(v.total_cost)),
                'amountPaid': float(to_money(v.amount_paid)),
                'dueAmount': float(to_money(v.due_amount)),
                'paymentMode': v.payment_mode,
                'patientName': v.patient.name if v.patient else None,
                'description': None,
            })

    if txn_type in ('', 'PAYMENT'):
        query = LedgerEntry.query.filter(LedgerEntry.client_id == client_id, LedgerEntry.type == ENTRY_CREDIT)
        if start_dt:
            query = query.filter(LedgerEntry.created_at >= start_dt)
        if end_dt:
            query = query.filter(LedgerEntry.created_at < end_dt)
        for e in query.all():
            transactions.append({
                'transactionType': 'PAYMENT',
                'transactionId': e.id,
                'reference': str(e.id),
                'transactionDate': e.created_at,
                'amount': float(to_money(e.amount)),
                'amountPaid': float(to_money(e.amount)),
                'dueAmount': 0.0,
                'paymentMode': None,
                'patientName': None,
                'description': e.description,
            })

    transactions.sort(key=lambda t: (t['transactionDate'], t['transactionId']), reverse=True)
    for t in transactions:
        t['transactionDate'] = _iso(t['transactionDate'])
    return jsonify(transactions)


@app.route('/api/b2b-financial/client/<int:client_id>/outstanding', methods=['GET'])
@login_required
def b2b_client_outstanding(client_id):
    denied = client_access_denied(client_id)
    if denied:
        return denied
    now = utcnow()
    visits = Visit.query.filter(
        Visit.ref_customer_id == client_id,
        Visit.due_amount > 0,
    ).order_by(Visit.registration_datetime.asc(), Visit.id.asc()).all()
    return jsonify([{
        'id': v.id,
        'visitCode': v.visit_code,
        'registrationDate': _iso(v.registration_datetime),
        'totalCost': float(to_money(v.total_cost)),
        'amountPaid': float(to_money(v.amount_paid)),
        'dueAmount': float(to_money(v.due_amount)),
        'patientName': v.patient.name if v.patient else None,
        'daysOutstanding': max((now - v.registration_datetime).days, 0),
    } for v in visits])


@app.route('/api/b2b-financial/client/<int:client_id>/generate-invoice', methods=['POST'])
@login_required
def generate_invoice(client_id):
    denied = client_access_denied(client_id)
    if denied:
        return denied
    try:
        return jsonify(build_invoice(client_id, request_data()))
    except LedgerError as e:
        return error_response(e.message, e.status_code)


@app.route('/api/b2b-financial/client/<int:client_id>/export-invoice-csv', methods=['POST'])
@login_required
def export_invoice_csv(client_id):
    denied = client_access_denied(client_id)
    if denied:
        return denied
    try:
        invoice = build_invoice(client_id, request_data())
    except LedgerError as e:
        return error_response(e.message, e.status_code)

    symbol = current_app.config['CURRENCY_SYMBOL']
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['Invoice', invoice['client']['name'], f"Client ID {invoice['client']['id']}"])
    writer.writerow(['Period', invoice['invoicePeriod']['startDate'] or '', invoice['invoicePeriod']['endDate'] or ''])
    writer.writerow([])
    writer.writerow(['Visit Code', 'Date', 'Patient', 'Tests', 'Total', 'Paid', 'Due'])
    for v in invoice['visits']:
        writer.writerow([
            v['visitCode'],
            (v['registrationDate'] or '')[:10],
            v['patientName'] or '',
            '; '.join(v['testNames']),
            f"{symbol}{v['totalCost']:.2f}",
            f"{symbol}{v['amountPaid']:.2f}",
            f"{symbol}{v['dueAmount']:.2f}",
        ])
    summary = invoice['summary']
    writer.writerow([])
    writer.writerow(['Total Visits', summary['totalVisits']])
    writer.writerow(['Total Amount', f"{symbol}{summary['totalAmount']:.2f}"])
    writer.writerow(['Total Paid', f"{symbol}{summary['totalPaid']:.2f}"])
    writer.writerow(['Total Due', f"{symbol}{summary['totalDue']:.2f}"])
    writer.writerow(['Current Balance', f"{symbol}{invoice['client']['currentBalance']:.2f}"])

    filename = f"invoice-{'-'.join(invoice['client']['name'].split())}-{get_lab_now().strftime('%Y%m%d')}.csv"
    response = make_response(output.getvalue())
    response.headers['Content-Disposition'] = f'attachment; filename={filename}'
    response.headers['Content-type'] = 'text/csv'
    return response


# =====================
# WAIVER ROUTES
# =====================

def _waiver_summary_query():
    return db.session.query(
        B2BWaiver.client_id,
        Client.name,
        func.count(B2BWaiver.id),
        func.coalesce(func.sum(B2BWaiver.waiver_amount), 0),
        func.coalesce(func.sum(B2BWaiver.original_balance), 0),
        func.coalesce(func.sum(B2BWaiver.amount_received), 0),
        func.max(B2BWaiver.created_at),
    ).join(Client, Client.id == B2BWaiver.client_id).group_by(B2BWaiver.client_id, Client.name)


def _waiver_summary_row(row):
    client_id, name, count, waived, original, received, last = row
    return {
        'client_id': client_id,
        'client_name': name,
        'total_waivers': int(count or 0),
        'total_waiver_amount': float(to_money(waived)),
        'total_original_balance': float(to_money(original)),
        'total_amount_received': float(to_money(received)),
        'last_waiver_date': _iso(last),
    }


@app.route('/api/waivers', methods=['GET'])
@admin_required_json
def list_waivers():
    try:
        page = max(int(request.args.get('page', 1)), 1)
        limit = int(request.args.get('limit', current_app.config['WAIVERS_PAGE_SIZE']))
    except ValueError:
        return bad_request('page and limit must be integers')
    limit = min(max(limit, 1), 500)

    total_count = db.session.query(func.count(B2BWaiver.id)).scalar() or 0
    waivers = B2BWaiver.query.order_by(B2BWaiver.created_at.desc(), B2BWaiver.id.desc()).limit(limit).offset(
        (page - 1) * limit
    ).all()
    return jsonify({
        'waivers': [w.to_dict() for w in waivers],
        'pagination': {
            'page': page,
            'limit': limit,
            'totalCount': total_count,
            'totalPages': math.ceil(total_count / limit) if total_count else 0,
        },
    })


@app.route('/api/waivers/summary', methods=['GET'])
@admin_required_json
def waiver_summary():
    rows = _waiver_summary_query().order_by(func.sum(B2BWaiver.waiver_amount).desc()).all()
    return jsonify({'summary': [_waiver_summary_row(r) for r in rows]})


@app.route('/api/waivers/client/<int:client_id>', methods=['GET'])
@admin_required_json
def client_waivers(client_id):
    waivers = B2BWaiver.query.filter_by(client_id=client_id).order_by(
        B2BWaiver.created_at.desc(), B2BWaiver.id.desc()
    ).all()
    row = _waiver_summary_query().filter(B2BWaiver.client_id == client_id).first()
    return jsonify({
        'waivers': [w.to_dict() for w in waivers],
        'summary': _waiver_summary_row(row) if row else None,
    })


@app.route('/api/waivers/stats', methods=['GET'])
@admin_required_json
def waiver_stats():
    count, total, average, maximum, minimum, clients = db.session.query(
        func.count(B2BWaiver.id),
        func.sum(B2BWaiver.waiver_amount),
        func.avg(B2BWaiver.waiver_amount),
        func.max(B2BWaiver.waiver_amount),
        func.min(B2BWaiver.waiver_amount),
        func.count(func.distinct(B2BWaiver.client_id)),
    ).one()

    def money_or_none(value):
        return float(to_money(value)) if value is not None else None

    by_mode = db.session.query(
        B2BWaiver.payment_mode,
        func.count(B2BWaiver.id),
        func.sum(B2BWaiver.waiver_amount),
    ).group_by(B2BWaiver.payment_mode).order_by(func.sum(B2BWaiver.waiver_amount).desc()).all()

    waiver_day = func.date(B2BWaiver.created_at)
    recent = db.session.query(
        waiver_day,
        func.count(B2BWaiver.id),
        func.sum(B2BWaiver.waiver_amount),
    ).filter(
        B2BWaiver.created_at >= utcnow() - timedelta(days=30)
    ).group_by(waiver_day).order_by(waiver_day.desc()).all()

    return jsonify({
        'overall': {
            'total_waivers': int(count or 0),
            'total_waiver_amount': money_or_none(total),
            'average_waiver_amount': money_or_none(average),
            'max_waiver_amount': money_or_none(maximum),
            'min_waiver_amount': money_or_none(minimum),
            'clients_with_waivers': int(clients or 0),
        },
        'byPaymentMode': [
            {'payment_mode': mode, 'count': int(n), 'total_amount': money_or_none(amt)}
            for mode, n, amt in by_mode
        ],
        'last30Days': [
            {'date': _iso(day), 'count': int(n), 'total_amount': money_or_none(amt)}
            for day, n, amt in recent
        ],
    })


# Error handlers
@app.errorhandler(400)
def handle_bad_request(e):
    return error_response('Bad request', 400)


@app.errorhandler(401)
def handle_unauthorized(e):
    return error_response('Authentication required', 401)


@app.errorhandler(403)
def handle_forbidden(e):
    return error_response('Forbidden', 403)


@app.errorhandler(404)
def handle_not_found(e):
    return error_response('Not found', 404)


@app.errorhandler(405)
def handle_method_not_allowed(e):
    return error_response('Method not allowed', 405)


@app.errorhandler(429)
def handle_rate_limited(e):
    return error_response('Too many requests', 429)


@app.errorhandler(500)
def handle_internal_server_error(e):
    return error_response('Internal server error', 500)


def initialize_database():
    with app.app_context():
        # Create all database tables
        db.create_all()


app.register_blueprint(auth_bp, url_prefix='/auth')

# Initialize scheduler
scheduler = None
if app.config.get('LEDGER_AUDIT_SCHEDULE_ENABLED') and (not app.debug or os.environ.get('WERKZEUG_RUN_MAIN') == 'true'):
    scheduler = start_ledger_audit_scheduler()


if __name__ == '__main__':
    initialize_database()

    host = '0.0.0.0'
    port = int(os.environ.get('PORT', 5000))

    app.logger.info(f"Starting server on {host}:{port} (DEBUG={app.config.get('DEBUG', False)})")
    app.run(host=host, port=port, debug=app.config.get('DEBUG', False))
