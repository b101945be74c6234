"""
Shared pytest fixtures and configuration for all tests.

Provides the Flask application, a clean in-memory database per test,
a merchant that can log in with its Loyverse token, and sample receipts.
"""

import pytest
import sys
import os
from decimal import Decimal
from datetime import datetime
from unittest.mock import Mock

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from app.models import db
from app.services.zimra_client import clear_zimra_clients

TEST_TOKEN = 'test-loyverse-token'
STORE_DESCRIPTION = 'Email: shop@example.com, TIN: 2001234567, VAT: 220123456, Province: Harare'


@pytest.fixture(scope='session')
def app_factory():
    """Factory fixture for creating test app instances."""
    def _create_app(config='testing'):
        app = create_app(config)
        app.config['WTF_CSRF_ENABLED'] = False
        app.config['TESTING'] = True
        app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'
        app.config['ITEMS_PER_PAGE'] = 20
        return app
    return _create_app


@pytest.fixture(scope='session')
def app(app_factory):
    """Create application for testing session."""
    return app_factory()


@pytest.fixture(scope='function')
def fresh_app(app_factory):
    """Create a fresh application for each test with clean database."""
    app = app_factory()

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(fresh_app):
    """Create a test client for each test."""
    return fresh_app.test_client()


@pytest.fixture(scope='function')
def db_session(fresh_app):
    """Provide a database session for testing."""
    yield db.session
    db.session.rollback()


@pytest.fixture(autouse=True)
def reset_zimra_clients():
    """Fiscal day state is cached per merchant/device; start every test from Closed."""
    clear_zimra_clients()
    yield
    clear_zimra_clients()


@pytest.fixture(scope='function')
def merchant(fresh_app):
    """Active merchant with a valid store description"""
    from app.models import Merchant

    merchant = Merchant(
        merchant_id='merchant-001',
        loyverse_token=TEST_TOKEN,
        merchant_name='Test Traders',
        tin='2001234567',
        vat='220123456',
        store_name='Test Traders Harare',
        store_address='12 Samora Machel Ave',
        store_city='Harare',
        store_contact_number='+263 242 000000',
        store_description=STORE_DESCRIPTION,
        is_active=True
    )
    db.session.add(merchant)
    db.session.commit()
    return merchant


@pytest.fixture(scope='function')
def other_merchant(fresh_app):
    """Second merchant, for checking data is not shared"""
    from app.models import Merchant

    merchant = Merchant(
        merchant_id='merchant-002',
        loyverse_token='other-loyverse-token',
        merchant_name='Other Shop',
        is_active=True
    )
    db.session.add(merchant)
    db.session.commit()
    return merchant


@pytest.fixture
def auth_client(client, merchant):
    """
    Login as the merchant and return authenticated client.
    The token is found locally, so Loyverse is never contacted.
    """
    response = client.post('/api/auth/login', json={'token': TEST_TOKEN})
    assert response.status_code == 200
    return client


def make_sale(merchant, receipt='R-1001', **overrides):
    """Build an unsaved fiscal invoice with one line and one cash payment."""
    from app.models import Sale, SaleItem, Payment

    values = dict(
        merchant_id=merchant.id if merchant is not None else None,
        receipt=receipt,
        receipt_type='FiscalInvoice',
        notes='OG Date 3/5/2024',
        timestamp=datetime(2024, 3, 5, 10, 30, 0),
        total=Decimal('17.39'),
        total_inc=Decimal('20.00'),
        vat_amount=Decimal('2.61'),
        store_name='Test Traders Harare',
        store_address='12 Samora Machel Ave',
        store_city='Harare',
        store_email='shop@example.com',
        store_tin_number='2001234567',
        store_vat_number='220123456',
        customer_name='Cash Sale',
        footer_text='Thank you',
    )
    values.update(overrides)
    sale = Sale(**values)
    sale.items.append(SaleItem(
        name='Phone Charger',
        hs_code='85044000',
        quantity=Decimal('2'),
        price_inc=Decimal('10.00'),
        total_inc=Decimal('20.00'),
        vat_amount=Decimal('2.61'),
        tax_name='VAT'
    ))
    sale.payments.append(Payment(amount=Decimal('20.00'), currency='USD', payment_type='Cash'))
    return sale


@pytest.fixture(scope='function')
def sample_sale(merchant):
    """Stored fiscal invoice that has not been submitted yet"""
    sale = make_sale(merchant)
    db.session.add(sale)
    db.session.commit()
    return sale


@pytest.fixture(scope='function')
def fiscalised_sale(merchant):
    """Stored fiscal invoice already accepted by FDMS"""
    sale = make_sale(
        merchant,
        receipt='R-1002',
        zimra_submitted=True,
        zimra_device_id='12345',
        zimra_global_no='45',
        receipt_counter='3',
        zimra_qr_data='ABCDEF1234567890',
        zimra_fiscal_day_no='7'
    )
    db.session.add(sale)
    db.session.commit()
    return sale


def mock_response(status_code=200, json_data=None, text=''):
    """Stand-in for a requests.Response"""
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.text = text
    response.json.return_value = json_data if json_data is not None else {}
    return response


# Pytest configuration
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "auth: marks tests as authentication tests"
    )


def pytest_collection_modifyitems(config, items):
    """Automatically add markers based on test class/function names."""
    for item in items:
        if 'auth' in item.name.lower() or 'login' in item.name.lower():
            item.add_marker(pytest.mark.auth)
