import os
import tempfile

_tmp = tempfile.mkdtemp(prefix='microjobs-test-')
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['UPLOAD_FOLDER'] = os.path.join(_tmp, 'uploads')
os.environ['LOG_DIR'] = os.path.join(_tmp, 'logs')
os.environ['SESSION_SECRET'] = 'test-secret'
os.environ['ENABLE_SCHEDULER'] = 'false'
os.environ.pop('STRIPE_SECRET_KEY', None)
os.environ.pop('SENDGRID_API_KEY', None)
os.environ.pop('MONITORING_INGEST_TOKEN', None)
os.environ.pop('ADMIN_EMAIL', None)
os.environ.pop('ADMIN_PASSWORD', None)

import pytest
import stripe
from werkzeug.security import generate_password_hash

import app as app_module
from app import app, db, User, Microjob, Application, Category, seed_defaults, get_or_create_wallet


@pytest.fixture(autouse=True)
def app_ctx(monkeypatch):
    app.config['TESTING'] = True
    monkeypatch.setattr(stripe, 'api_key', None)
    app_module.login_attempts.clear()
    app_module.api_rate_limits.clear()

    with app.app_context():
        db.drop_all()
        db.create_all()
        seed_defaults()
        yield app
        db.session.remove()


@pytest.fixture
def client():
    return app.test_client()


@pytest.fixture
def make_user():
    def _make_user(username, is_admin=False, deposit=0.0, earnings=0.0, password='Passw0rdX'):
        user = User(
            username=username,
            email=f'{username}@mailhost.io',
            password_hash=generate_password_hash(password),
            is_admin=is_admin
        )
        db.session.add(user)
        db.session.flush()
        wallet = get_or_create_wallet(user.id)
        wallet.deposit_balance = deposit
        wallet.earnings_balance = earnings
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def login():
    def _login(client, user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
        return client
    return _login


@pytest.fixture
def make_job():
    def _make_job(employer, **kwargs):
        values = {
            'title': 'Follow our page and leave a comment',
            'description': 'Follow the page, comment on the pinned post, send a screenshot.',
            'budget_min': 5.0,
            'budget_max': 10.0,
            'workers_needed': 2,
            'applications_count': 0,
            'status': 'open',
            'category_id': Category.query.filter_by(slug='social-media').first().id,
        }
        values.update(kwargs)
        job = Microjob(employer_id=employer.id, **values)
        db.session.add(job)
        db.session.commit()
        return job
    return _make_job


@pytest.fixture
def hired(make_user, make_job):
    """An employer with a funded escrow for one accepted worker"""
    def _hired(amount=10.0, employer_deposit=100.0):
        employer = make_user('employer', deposit=employer_deposit)
        worker = make_user('worker')
        job = make_job(employer)
        application = Application(job_id=job.id, applicant_id=worker.id, proposed_budget=amount, status='pending')
        job.applications_count = 1
        db.session.add(application)
        db.session.flush()
        escrow, error = app_module.fund_escrow(application, job, amount)
        assert error is None
        application.status = 'accepted'
        db.session.commit()
        return employer, worker, job, application, escrow
    return _hired
