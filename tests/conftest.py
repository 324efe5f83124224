"""
Pytest configuration and fixtures for CurtainPoint backend tests
"""
import pytest

from app_config import TestingConfig
from auth import generate_token
from models import db
from server import create_app
from services import Actor, get_escrow_engine, get_collaboration_splitter
from services import job_store, ledger


@pytest.fixture(scope='function')
def app():
    """Create a fresh application and in-memory database per test"""
    app = create_app(TestingConfig)

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture
def engine(app):
    return get_escrow_engine()


@pytest.fixture
def splitter(app):
    return get_collaboration_splitter()


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------
@pytest.fixture
def seller():
    return Actor('seller-s', 'seller')


@pytest.fixture
def other_seller():
    return Actor('seller-t', 'seller')


@pytest.fixture
def contractor():
    return Actor('contractor-x', 'contractor')


@pytest.fixture
def contractor_y():
    return Actor('contractor-y', 'contractor')


@pytest.fixture
def contractor_z():
    return Actor('contractor-z', 'contractor')


@pytest.fixture
def admin():
    return Actor('admin-a', 'admin')


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
@pytest.fixture
def fund(app):
    """Credit points to an owner through the charge path"""
    def _fund(actor, amount):
        return ledger.record_charge(actor.actor_id, actor.role, amount)
    return _fund


@pytest.fixture
def make_job(app, seller):
    """Create a pending job worth 100000 points unless overridden"""
    def _make_job(**overrides):
        spec = {
            'seller_id': seller.actor_id,
            'title': 'Living room blackout curtains',
            'address': '12 Harbour Road',
            'items': [
                {'name': 'Blackout curtain', 'quantity': 2, 'unit_price': 40000},
                {'name': 'Installation', 'quantity': 1, 'unit_price': 20000},
            ],
            'budget': {'min': 90000, 'max': 120000},
        }
        spec.update(overrides)
        return job_store.create_job(spec)
    return _make_job


@pytest.fixture
def assigned_job(engine, make_job, fund, seller, contractor):
    """A funded job accepted by contractor X"""
    fund(seller, 100000)
    job = make_job()
    return engine.request_transition(job.id, 'assigned', contractor)


@pytest.fixture
def advance(engine):
    """Walk an assigned job along the work path up to ``target``"""
    path = ['product_preparing', 'product_ready', 'pickup_completed', 'in_progress', 'completed']

    def _advance(job_id, actor, target, now=None):
        job = job_store.get_job(job_id)
        for status in path[path.index(job.status) + 1 if job.status in path else 0:]:
            job = engine.request_transition(job_id, status, actor, now=now)
            if status == target:
                break
        return job
    return _advance


@pytest.fixture
def headers_for(app):
    """Generate auth headers with a JWT for an actor"""
    def _headers(actor):
        token = generate_token(actor.actor_id, actor.role)
        return {
            'Authorization': 'Bearer {}'.format(token),
            'Content-Type': 'application/json',
        }
    return _headers
