"""
Database Models
SQLAlchemy ORM models for the fiscal POS service
"""

from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin

db = SQLAlchemy()


class Merchant(UserMixin, db.Model):
    """Merchant account, authenticated by its Loyverse access token"""
    __tablename__ = 'merchants'

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    loyverse_token = db.Column(db.String(255), unique=True, nullable=False, index=True)
    merchant_name = db.Column(db.String(128))
    tin = db.Column(db.String(32))
    vat = db.Column(db.String(32))
    # "Email: x, TIN: y, VAT: z, Province: p" as typed into the Loyverse store description
    store_description = db.Column(db.Text)
    store_name = db.Column(db.String(128))
    store_address = db.Column(db.String(255))
    store_city = db.Column(db.String(64))
    store_contact_number = db.Column(db.String(32))

    is_active = db.Column(db.Boolean, default=True)
    terms_accepted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_login = db.Column(db.DateTime)

    # Relationships
    sales = db.relationship('Sale', backref='merchant', lazy='dynamic')
    fiscal_days = db.relationship('FiscalDay', backref='merchant', lazy='dynamic')
    devices = db.relationship('ZimraCredentials', backref='merchant', lazy='dynamic')

    @property
    def has_accepted_terms(self):
        return self.terms_accepted_at is not None

    def to_dict(self):
        return {
            'id': self.id,
            'merchant_id': self.merchant_id,
            'merchant_name': self.merchant_name,
            'tin': self.tin,
            'vat': self.vat,
            'store_name': self.store_name,
            'has_accepted_terms': self.has_accepted_terms,
            'last_login': self.last_login.isoformat() if self.last_login else None,
        }

    def __repr__(self):
        return f'<Merchant {self.merchant_id}>'


class Sale(db.Model):
    """Fiscal invoices and credit notes"""
    __tablename__ = 'sales'
    __table_args__ = (
        db.UniqueConstraint('merchant_id', 'receipt', name='uix_merchant_receipt'),
    )

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey('merchants.id'), nullable=False, index=True)
    receipt = db.Column(db.String(64), nullable=False, index=True)
    receipt_type = db.Column(db.String(32), nullable=False, default='FiscalInvoice')
    # FiscalInvoice, CreditNote, DebitNote
    refund_for = db.Column(db.String(64))
    cancelled_at = db.Column(db.String(64))
    notes = db.Column(db.Text)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    # Amounts
    total = db.Column(db.Numeric(12, 2), nullable=False, default=0.00)
    total_inc = db.Column(db.Numeric(12, 2), nullable=False, default=0.00)
    vat_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0.00)

    # Store
    store_name = db.Column(db.String(128), nullable=False, default='')
    store_id = db.Column(db.String(64))
    store_address = db.Column(db.String(255))
    store_city = db.Column(db.String(64))
    store_province = db.Column(db.String(64))
    store_email = db.Column(db.String(128))
    store_contact_number = db.Column(db.String(32))
    store_tin_number = db.Column(db.String(32))
    store_vat_number = db.Column(db.String(32))

    # Customer
    customer_name = db.Column(db.String(128))
    customer_address = db.Column(db.String(255))
    customer_city = db.Column(db.String(64))
    customer_email = db.Column(db.String(128))
    customer_contact = db.Column(db.String(32))
    customer_tin = db.Column(db.String(32))
    customer_vat = db.Column(db.String(32))
    customer_balance = db.Column(db.Numeric(12, 2), default=0.00)
    customer_tax_money = db.Column(db.Numeric(12, 2), default=0.00)

    footer_text = db.Column(db.Text)
    receipt_hash = db.Column(db.String(255))

    # ZIMRA submission
    zimra_submitted = db.Column(db.Boolean, default=False)
    zimra_submission_date = db.Column(db.DateTime)
    zimra_receipt_id = db.Column(db.String(64))
    zimra_device_id = db.Column(db.String(32))
    zimra_qr_data = db.Column(db.String(64))
    zimra_error = db.Column(db.Text)
    zimra_fiscal_day_no = db.Column(db.String(32))
    zimra_fiscal_day_id = db.Column(db.String(64))
    zimra_operation_id = db.Column(db.String(64))
    zimra_global_no = db.Column(db.String(32))
    receipt_counter = db.Column(db.String(32))
    submission_route = db.Column(db.String(32))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    items = db.relationship('SaleItem', backref='sale', cascade='all, delete-orphan',
                            order_by='SaleItem.id')
    payments = db.relationship('Payment', backref='sale', cascade='all, delete-orphan',
                               order_by='Payment.id')

    @property
    def has_zimra_data(self):
        """Whether the receipt carries any fiscal device information"""
        return bool(self.zimra_submitted or self.zimra_qr_data or self.zimra_global_no)

    @property
    def is_credit_note(self):
        return self.receipt_type == 'CreditNote'

    @property
    def is_debit_note(self):
        return self.receipt_type == 'DebitNote'

    def to_dict(self):
        return {
            'id': self.id,
            'receipt': self.receipt,
            'receipt_type': self.receipt_type,
            'refund_for': self.refund_for,
            'notes': self.notes,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'total': float(self.total or 0),
            'total_inc': float(self.total_inc or 0),
            'vat_amount': float(self.vat_amount or 0),
            'store_name': self.store_name,
            'customer_name': self.customer_name,
            'customer_tin': self.customer_tin,
            'customer_vat': self.customer_vat,
            'customer_balance': float(self.customer_balance or 0),
            'customer_tax_money': float(self.customer_tax_money or 0),
            'items': [item.to_dict() for item in self.items],
            'payments': [payment.to_dict() for payment in self.payments],
            'zimra_submitted': bool(self.zimra_submitted),
            'zimra_error': self.zimra_error,
            'zimra_receipt_id': self.zimra_receipt_id,
            'receipt_hash': self.receipt_hash,
            'zimra_global_no': self.zimra_global_no,
            'zimra_fiscal_day_no': self.zimra_fiscal_day_no,
            'zimra_device_id': self.zimra_device_id,
            'receipt_counter': self.receipt_counter,
        }

    def __repr__(self):
        return f'<Sale {self.receipt}>'


class SaleItem(db.Model):
    """Line items of a fiscal receipt"""
    __tablename__ = 'sale_items'

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey('sales.id'), nullable=False)

    name = db.Column(db.String(255), nullable=False)
    hs_code = db.Column(db.String(8))
    quantity = db.Column(db.Numeric(10, 3), nullable=False, default=1)
    price_inc = db.Column(db.Numeric(12, 2), nullable=False, default=0.00)
    total_inc = db.Column(db.Numeric(12, 2), nullable=False, default=0.00)
    vat_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0.00)
    tax_name = db.Column(db.String(64))

    def to_dict(self):
        return {
            'name': self.name,
            'hs_code': self.hs_code,
            'quantity': float(self.quantity or 0),
            'price_inc': float(self.price_inc or 0),
            'total_inc': float(self.total_inc or 0),
            'vat_amount': float(self.vat_amount or 0),
            'tax_name': self.tax_name,
        }

    def __repr__(self):
        return f'<SaleItem {self.name}>'


class Payment(db.Model):
    """Payments tendered against a receipt"""
    __tablename__ = 'payments'

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey('sales.id'), nullable=False)

    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0.00)
    currency = db.Column(db.String(16), nullable=False, default='USD')
    payment_type = db.Column(db.String(32), nullable=False, default='CASH')

    def to_dict(self):
        return {
            'amount': float(self.amount or 0),
            'currency': self.currency,
            'type': self.payment_type,
        }

    def __repr__(self):
        return f'<Payment {self.payment_type} {self.amount}>'


class ZimraCredentials(db.Model):
    """Registered fiscal device and its FDMS configuration"""
    __tablename__ = 'zimra_credentials'
    __table_args__ = (
        db.UniqueConstraint('merchant_id', 'device_id', name='uix_merchant_device'),
    )

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey('merchants.id'), nullable=False, index=True)
    device_id = db.Column(db.String(32), nullable=False)
    device_serial_no = db.Column(db.String(20))
    api_key = db.Column(db.String(255))
    operator_id = db.Column(db.String(64))
    # PEM key pair issued at registration; signs receipts and fiscal day reports
    private_key = db.Column(db.Text)
    certificate = db.Column(db.Text)

    taxpayer_name = db.Column(db.String(128))
    taxpayer_tin = db.Column(db.String(32))
    vat_number = db.Column(db.String(32))
    device_branch_name = db.Column(db.String(128))
    device_branch_address = db.Column(db.JSON)
    device_branch_contacts = db.Column(db.JSON)
    device_operating_mode = db.Column(db.String(16))  # Online, Offline
    taxpayer_day_max_hrs = db.Column(db.Integer)
    taxpayer_day_end_notification_hrs = db.Column(db.Integer)
    applicable_taxes = db.Column(db.JSON)
    certificate_valid_till = db.Column(db.String(64))
    qr_url = db.Column(db.String(255))
    operation_id = db.Column(db.String(64))

    # Fiscal day tracking
    fiscal_day_no = db.Column(db.String(32))
    fiscal_day_status = db.Column(db.String(16), default='Closed')
    fiscal_opened_date = db.Column(db.DateTime)
    next_global_no = db.Column(db.Integer, default=1)
    next_receipt_counter = db.Column(db.Integer, default=1)
    # Hash of the last accepted receipt of the fiscal day
    last_receipt_hash = db.Column(db.String(255))

    active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'device_id': self.device_id,
            'device_serial_no': self.device_serial_no,
            'taxpayer_name': self.taxpayer_name,
            'taxpayer_tin': self.taxpayer_tin,
            'vat_number': self.vat_number,
            'device_branch_name': self.device_branch_name,
            'device_operating_mode': self.device_operating_mode,
            'certificate_valid_till': self.certificate_valid_till,
            'qr_url': self.qr_url,
            'fiscal_day_no': self.fiscal_day_no,
            'fiscal_day_status': self.fiscal_day_status,
            'next_global_no': self.next_global_no,
            'next_receipt_counter': self.next_receipt_counter,
            'has_certificate': bool(self.certificate),
            'active': bool(self.active),
        }

    def __repr__(self):
        return f'<ZimraCredentials {self.device_id}>'


class FiscalDay(db.Model):
    """History of fiscal days opened and closed on a device"""
    __tablename__ = 'fiscal_days'

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey('merchants.id'), nullable=False, index=True)
    device_id = db.Column(db.String(32), nullable=False, index=True)
    device_serial_number = db.Column(db.String(20))
    fiscal_day_no = db.Column(db.String(32), nullable=False)
    operator_id = db.Column(db.String(64))

    opened_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    closed_at = db.Column(db.DateTime)
    day_end_time = db.Column(db.DateTime)

    fiscal_counters = db.Column(db.JSON, default=list)
    total_transactions = db.Column(db.Integer, default=0)
    total_amount = db.Column(db.Numeric(14, 2), default=0.00)
    total_vat = db.Column(db.Numeric(14, 2), default=0.00)

    status = db.Column(db.String(16), nullable=False, default='Open')  # Open, Closed
    report_status = db.Column(db.String(16), nullable=False, default='Pending')
    # Pending, Success, Error, Resubmitted, ManualClosure
    error_details = db.Column(db.Text)
    submission_attempts = db.Column(db.Integer, default=0)
    manual_closure = db.Column(db.Boolean, default=False)
    manual_closure_reason = db.Column(db.Text)
    last_submission_date = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'device_id': self.device_id,
            'fiscal_day_no': self.fiscal_day_no,
            'opened_at': self.opened_at.isoformat() if self.opened_at else None,
            'closed_at': self.closed_at.isoformat() if self.closed_at else None,
            'status': self.status,
            'report_status': self.report_status,
            'error_details': self.error_details,
            'submission_attempts': self.submission_attempts or 0,
            'manual_closure': bool(self.manual_closure),
            'manual_closure_reason': self.manual_closure_reason,
            'total_transactions': self.total_transactions or 0,
            'total_amount': float(self.total_amount or 0),
            'total_vat': float(self.total_vat or 0),
        }

    def __repr__(self):
        return f'<FiscalDay {self.device_id}#{self.fiscal_day_no}>'


class WebhookConfig(db.Model):
    """Loyverse webhook application credentials"""
    __tablename__ = 'webhook_configs'

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey('merchants.id'), nullable=False, unique=True)
    provider = db.Column(db.String(32), nullable=False, default='loyverse')
    app_id = db.Column(db.String(128), nullable=False)
    app_secret = db.Column(db.String(255), nullable=False)
    active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        # the secret never leaves the server
        return {
            'provider': self.provider,
            'app_id': self.app_id,
            'active': bool(self.active),
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<WebhookConfig {self.provider}:{self.app_id}>'


class WebhookQueue(db.Model):
    """Queue of received Loyverse webhook payloads awaiting processing"""
    __tablename__ = 'webhook_queue'

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.String(64), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False)

    status = db.Column(db.String(32), default='pending', index=True)  # pending, processed, failed
    attempts = db.Column(db.Integer, default=0)
    error_message = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    processed_at = db.Column(db.DateTime)

    def __repr__(self):
        return f'<WebhookQueue {self.merchant_id} - {self.status}>'


class BudgetAlertSetting(db.Model):
    """Sales target window a merchant wants to be alerted about"""
    __tablename__ = 'budget_alert_settings'

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey('merchants.id'), nullable=False, unique=True)

    enabled = db.Column(db.Boolean, default=False)
    target_period = db.Column(db.String(16), default='Hourly')  # Hourly, Daily, Weekly, Monthly
    calculation_basis = db.Column(db.String(16), default='By Tax')  # By Tax, By SalesExc, By SalesInc
    target_min = db.Column(db.Float)
    target_max = db.Column(db.Float)
    hourly_target = db.Column(db.Float)  # Legacy single target
    time_rules = db.Column(db.JSON)

    last_processed_hour = db.Column(db.String(8))  # HH:00:00
    last_check_time = db.Column(db.DateTime)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    merchant = db.relationship('Merchant', backref=db.backref('budget_alert_setting', uselist=False))

    def to_dict(self):
        return {
            'enabled': bool(self.enabled),
            'target_period': self.target_period,
            'calculation_basis': self.calculation_basis,
            'target_min': self.target_min,
            'target_max': self.target_max,
            'hourly_target': self.hourly_target,
            'time_rules': self.time_rules,
        }

    def __repr__(self):
        return f'<BudgetAlertSetting merchant={self.merchant_id}>'


class BudgetAlert(db.Model):
    """Triggered budget alerts"""
    __tablename__ = 'budget_alerts'

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey('merchants.id'), nullable=False, index=True)
    alert_type = db.Column(db.String(64), nullable=False)
    message = db.Column(db.Text, nullable=False)
    total_amount = db.Column(db.Float)
    target_min = db.Column(db.Float)
    target_max = db.Column(db.Float)
    triggered_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'alert_type': self.alert_type,
            'message': self.message,
            'total_amount': self.total_amount,
            'target_min': self.target_min,
            'target_max': self.target_max,
            'triggered_at': self.triggered_at.isoformat() if self.triggered_at else None,
        }

    def __repr__(self):
        return f'<BudgetAlert {self.alert_type}>'


class ActivityLog(db.Model):
    """Log of fiscal device operations"""
    __tablename__ = 'activity_logs'

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey('merchants.id'))
    action = db.Column(db.String(128), nullable=False)
    entity_type = db.Column(db.String(64))  # fiscal_day, sale, device, etc.
    entity_id = db.Column(db.String(64))
    details = db.Column(db.Text)
    ip_address = db.Column(db.String(64))

    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f'<ActivityLog {self.action}>'


class ErrorLog(db.Model):
    """Unhandled application errors captured with request context"""
    __tablename__ = 'error_logs'

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    error_type = db.Column(db.String(128))
    error_message = db.Column(db.Text)
    traceback = db.Column(db.Text)
    request_url = db.Column(db.String(512))
    request_method = db.Column(db.String(16))
    request_data = db.Column(db.Text)
    merchant_id = db.Column(db.Integer)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(512))
    status_code = db.Column(db.Integer)
    blueprint = db.Column(db.String(64))
    endpoint = db.Column(db.String(128))
    is_resolved = db.Column(db.Boolean, default=False)

    def __repr__(self):
        return f'<ErrorLog {self.error_type}>'
