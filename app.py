from flask import Flask, request, jsonify, session, send_from_directory, Response
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename
from datetime import datetime, timedelta
from functools import wraps
from email_validator import validate_email, EmailNotValidError
from sqlalchemy import or_, func
from dotenv import load_dotenv
import os
import secrets
import json
import re
import csv
import io
import hmac
import math
import stripe
import uuid

from email_service import email_service
from job_algorithm import MicrojobAlgorithmService
from monitoring_service import MonitoringService
from security_logger import init_security_logger

load_dotenv()

stripe.api_key = os.environ.get('STRIPE_SECRET_KEY')

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # In production, always set SESSION_SECRET or SECRET_KEY
    app.secret_key = secrets.token_hex(32)
    app.logger.warning("Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///microjobs.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=24)

app.config['LOG_DIR'] = os.environ.get('LOG_DIR')
app.config['MONITORING_INGEST_TOKEN'] = os.environ.get('MONITORING_INGEST_TOKEN')

db = SQLAlchemy(app)

# Restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

# File upload configuration
UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER') or os.path.join(os.path.dirname(os.path.abspath(__file__)), 'uploads')
ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
MAX_FILE_SIZE = 5 * 1024 * 1024  # 5MB
MAX_SCREENSHOTS = 5

os.makedirs(os.path.join(UPLOAD_FOLDER, 'work_proofs'), exist_ok=True)

app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
app.config['MAX_CONTENT_LENGTH'] = MAX_FILE_SIZE * MAX_SCREENSHOTS

# Wallet limits
MIN_DEPOSIT = 1.00
MAX_DEPOSIT = 10000.00
MIN_WITHDRAWAL = 10.00

def allowed_file(filename):
    """Check if file extension is allowed"""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS

# Rate limiting storage (in-memory, per process)
login_attempts = {}
api_rate_limits = {}

# General API rate limiting
def api_rate_limit(requests_per_minute=60):
    """Rate limit decorator for general API endpoints"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            identifier = f"{request.remote_addr}:{f.__name__}"
            current_time = datetime.utcnow()

            if identifier not in api_rate_limits:
                api_rate_limits[identifier] = {'requests': [], 'blocked_until': None}

            rate_data = api_rate_limits[identifier]

            if rate_data['blocked_until'] and current_time < rate_data['blocked_until']:
                remaining = int((rate_data['blocked_until'] - current_time).total_seconds())
                return jsonify({'error': f'Rate limit exceeded. Try again in {remaining} seconds'}), 429

            # Remove requests older than 1 minute
            one_minute_ago = current_time - timedelta(minutes=1)
            rate_data['requests'] = [t for t in rate_data['requests'] if t > one_minute_ago]

            if len(rate_data['requests']) >= requests_per_minute:
                rate_data['blocked_until'] = current_time + timedelta(seconds=60)
                return jsonify({'error': 'Rate limit exceeded. Please wait a moment.'}), 429

            rate_data['requests'].append(current_time)

            return f(*args, **kwargs)
        return wrapped
    return decorator

_last_cleanup = datetime.utcnow()

def cleanup_rate_limits():
    """Remove stale rate limit entries older than 1 hour"""
    global _last_cleanup
    current_time = datetime.utcnow()
    cutoff = current_time - timedelta(hours=1)

    stale_logins = [k for k, v in login_attempts.items()
                    if v['first_attempt'] < cutoff and
                    (v['locked_until'] is None or v['locked_until'] < current_time)]
    for k in stale_logins:
        del login_attempts[k]

    stale_api = [k for k, v in api_rate_limits.items()
                 if not v['requests'] or max(v['requests']) < cutoff]
    for k in stale_api:
        del api_rate_limits[k]

    _last_cleanup = current_time

@app.before_request
def before_request_handler():
    """Run periodic cleanup on rate limit storage"""
    current_time = datetime.utcnow()
    # Every 5 minutes
    if (current_time - _last_cleanup).total_seconds() > 300:
        cleanup_rate_limits()

# Security headers middleware
@app.after_request
def set_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    response.headers['Content-Security-Policy'] = "default-src 'self'; img-src 'self' data: https:; connect-src 'self'"
    return response

# Input validation functions
def validate_password_strength(password):
    """Validate password meets security requirements"""
    if not password or len(password) < 8:
        return False, "Password must be at least 8 characters long"
    if not re.search(r'[A-Z]', password):
        return False, "Password must contain at least one uppercase letter"
    if not re.search(r'[a-z]', password):
        return False, "Password must contain at least one lowercase letter"
    if not re.search(r'\d', password):
        return False, "Password must contain at least one number"
    return True, "Password is valid"

def validate_username(username):
    """Validate username format"""
    if not username or len(username) < 3 or len(username) > 30:
        return False, "Username must be between 3 and 30 characters"
    if not re.match(r'^[a-zA-Z0-9_]+$', username):
        return False, "Username can only contain letters, numbers, and underscores"
    return True, "Username is valid"

def sanitize_input(text, max_length=1000):
    """Trim and length-limit free text input"""
    if not text:
        return text
    text = str(text).strip()
    if len(text) > max_length:
        text = text[:max_length]
    return text

def parse_amount(value):
    """Parse a money amount, returning None when it is not a finite number"""
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(amount) or math.isinf(amount):
        return None
    return round(amount, 2)

def parse_int(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default

def parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')

def iso(value):
    return value.isoformat() if value else None

# Rate limiting decorator
def rate_limit(max_attempts=5, window_minutes=15, lockout_minutes=30):
    """Rate limit decorator to prevent brute force attacks"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            identifier = request.remote_addr
            current_time = datetime.utcnow()

            if identifier not in login_attempts:
                login_attempts[identifier] = {'count': 0, 'first_attempt': current_time, 'locked_until': None}

            attempt_data = login_attempts[identifier]

            if attempt_data['locked_until'] and current_time < attempt_data['locked_until']:
                remaining = int((attempt_data['locked_until'] - current_time).total_seconds() / 60)
                return jsonify({'error': f'Too many failed attempts. Account locked for {remaining} more minutes'}), 429

            # Reset if window has passed
            if (current_time - attempt_data['first_attempt']).total_seconds() > window_minutes * 60:
                attempt_data['count'] = 0
                attempt_data['first_attempt'] = current_time
                attempt_data['locked_until'] = None

            if attempt_data['count'] >= max_attempts:
                attempt_data['locked_until'] = current_time + timedelta(minutes=lockout_minutes)
                return jsonify({'error': f'Too many failed attempts. Account locked for {lockout_minutes} minutes'}), 429

            attempt_data['count'] += 1

            return f(*args, **kwargs)
        return wrapped
    return decorator

def reset_rate_limit(identifier):
    """Reset rate limit for successful login"""
    if identifier in login_attempts:
        login_attempts[identifier] = {'count': 0, 'first_attempt': datetime.utcnow(), 'locked_until': None}

def generate_reference_number(prefix):
    """Generate a reference like WDR-20240101-1A2B3C4D"""
    return f"{prefix}-{datetime.utcnow().strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"

# Login required decorator for API routes
def login_required(f):
    """Decorator to require an authenticated, non-suspended user"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401

        user = db.session.get(User, session['user_id'])
        if not user:
            session.pop('user_id', None)
            return jsonify({'error': 'Unauthorized - Please login'}), 401
        if user.is_suspended:
            return jsonify({'error': f'Your account has been suspended. Reason: {user.suspension_reason or "Not specified"}'}), 403

        return f(*args, **kwargs)
    return decorated_function

# Admin authentication decorator
def admin_required(f):
    """Decorator to require admin authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401

        user = db.session.get(User, session['user_id'])
        if not user or not user.is_admin or user.is_suspended:
            return jsonify({'error': 'Forbidden - Admin access required'}), 403

        return f(*args, **kwargs)
    return decorated_function

def ingest_auth_required(f):
    """Allow metric agents with the ingest bearer token, or an admin session"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = app.config.get('MONITORING_INGEST_TOKEN')
        auth_header = request.headers.get('Authorization', '')
        if expected and auth_header.startswith('Bearer '):
            if hmac.compare_digest(auth_header[7:].strip(), expected):
                return f(*args, **kwargs)
            return jsonify({'error': 'Invalid ingest token'}), 401

        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized'}), 401
        user = db.session.get(User, session['user_id'])
        if not user or not user.is_admin:
            return jsonify({'error': 'Forbidden - Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated_function

def current_user():
    if 'user_id' not in session:
        return None
    return db.session.get(User, session['user_id'])

# Database Models
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(80))
    last_name = db.Column(db.String(80))
    avatar_url = db.Column(db.String(500))
    bio = db.Column(db.Text)
    country = db.Column(db.String(100), default='United States')
    rating = db.Column(db.Float, default=0.0)
    review_count = db.Column(db.Integer, default=0)
    is_verified = db.Column(db.Boolean, default=False)
    is_admin = db.Column(db.Boolean, default=False)
    is_suspended = db.Column(db.Boolean, default=False)
    suspension_reason = db.Column(db.Text)
    suspended_at = db.Column(db.DateTime)
    suspended_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    last_active_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def user_type(self):
        if self.is_suspended:
            return 'suspended'
        return 'admin' if self.is_admin else 'user'

    def public_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'avatar_url': self.avatar_url,
            'country': self.country,
            'rating': round(self.rating or 0, 2),
            'review_count': self.review_count or 0
        }

    def to_dict(self):
        data = self.public_dict()
        data.update({
            'email': self.email,
            'bio': self.bio,
            'user_type': self.user_type,
            'is_admin': self.is_admin,
            'is_verified': self.is_verified,
            'is_suspended': self.is_suspended,
            'suspension_reason': self.suspension_reason,
            'created_at': iso(self.created_at)
        })
        return data

class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text)
    icon = db.Column(db.String(50))
    thumbnail_url = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'description': self.description,
            'icon': self.icon,
            'thumbnail_url': self.thumbnail_url
        }

class Microjob(db.Model):
    __tablename__ = 'microjobs'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    instructions = db.Column(db.Text)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'))
    employer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    budget_min = db.Column(db.Float, nullable=False)
    budget_max = db.Column(db.Float, nullable=False)
    deadline = db.Column(db.DateTime)
    location = db.Column(db.String(100))
    is_remote = db.Column(db.Boolean, default=True)
    workers_needed = db.Column(db.Integer, default=1, nullable=False)
    applications_count = db.Column(db.Integer, default=0, nullable=False)
    thumbnail_url = db.Column(db.String(500))
    status = db.Column(db.String(20), default='open')  # pending, approved, open, paused, completed, cancelled, rejected
    rejection_reason = db.Column(db.Text)
    views = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    employer = db.relationship('User', foreign_keys=[employer_id])
    category = db.relationship('Category')

    LISTED_STATUSES = ('approved', 'open')

    @property
    def slots_available(self):
        return max(0, (self.workers_needed or 0) - (self.applications_count or 0))

    def to_dict(self):
        category = self.category
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'instructions': self.instructions,
            'category_id': self.category_id,
            'category': category.to_dict() if category else None,
            'employer_id': self.employer_id,
            'employer': self.employer.public_dict() if self.employer else None,
            'budget_min': self.budget_min,
            'budget_max': self.budget_max,
            'deadline': iso(self.deadline),
            'location': self.location,
            'is_remote': self.is_remote,
            'workers_needed': self.workers_needed,
            'applications_count': self.applications_count,
            'slots_available': self.slots_available,
            'thumbnail_url': self.thumbnail_url or (category.thumbnail_url if category else None),
            'status': self.status,
            'views': self.views,
            'created_at': iso(self.created_at),
            'updated_at': iso(self.updated_at)
        }

class RotationTracking(db.Model):
    """Front-page exposure history per job, used by the time rotation algorithm"""
    __tablename__ = 'microjob_rotation_tracking'
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('microjobs.id'), nullable=False, unique=True)
    last_front_page_at = db.Column(db.DateTime)
    front_page_duration_minutes = db.Column(db.Integer, default=0)
    rotation_cycle = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

class Favorite(db.Model):
    __tablename__ = 'user_favorites'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'job_id', name='unique_favorite_per_job'),
    )
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    job_id = db.Column(db.Integer, db.ForeignKey('microjobs.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

class Application(db.Model):
    __table_args__ = (
        db.UniqueConstraint('job_id', 'applicant_id', name='unique_application_per_job'),
    )
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('microjobs.id'), nullable=False)
    applicant_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    cover_letter = db.Column(db.Text)
    proposed_budget = db.Column(db.Float)
    estimated_duration = db.Column(db.String(50))
    portfolio_links = db.Column(db.Text)  # JSON array
    status = db.Column(db.String(20), default='pending')  # pending, accepted, rejected, completed, cancelled
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    job = db.relationship('Microjob')
    applicant = db.relationship('User', foreign_keys=[applicant_id])

    # Statuses that occupy one of the job's worker slots
    ACTIVE_STATUSES = ('pending', 'accepted', 'completed')

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'applicant_id': self.applicant_id,
            'applicant': self.applicant.public_dict() if self.applicant else None,
            'cover_letter': self.cover_letter,
            'proposed_budget': self.proposed_budget,
            'estimated_duration': self.estimated_duration,
            'portfolio_links': json.loads(self.portfolio_links) if self.portfolio_links else [],
            'status': self.status,
            'created_at': iso(self.created_at),
            'updated_at': iso(self.updated_at)
        }

class Escrow(db.Model):
    """Funds held from the employer for one accepted application"""
    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(db.Integer, db.ForeignKey('application.id'), nullable=False, unique=True)
    job_id = db.Column(db.Integer, db.ForeignKey('microjobs.id'), nullable=False)
    employer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    worker_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    platform_fee = db.Column(db.Float, default=0.0)
    net_amount = db.Column(db.Float)
    status = db.Column(db.String(30), default='funded')  # funded, released, refunded, disputed
    refund_reason = db.Column(db.Text)
    funded_at = db.Column(db.DateTime, default=datetime.utcnow)
    released_at = db.Column(db.DateTime)
    refunded_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        """Convert escrow to dictionary for JSON response"""
        return {
            'id': self.id,
            'application_id': self.application_id,
            'job_id': self.job_id,
            'employer_id': self.employer_id,
            'worker_id': self.worker_id,
            'amount': self.amount,
            'platform_fee': self.platform_fee,
            'net_amount': self.net_amount,
            'status': self.status,
            'status_label': self.get_status_label(),
            'funded_at': iso(self.funded_at),
            'released_at': iso(self.released_at),
            'refunded_at': iso(self.refunded_at)
        }

    def get_status_label(self):
        """Get human-readable status label"""
        labels = {
            'funded': 'Funds Held in Escrow',
            'released': 'Released to Worker',
            'refunded': 'Refunded to Employer',
            'disputed': 'Under Dispute'
        }
        return labels.get(self.status, self.status.title())

class WorkProof(db.Model):
    """Evidence of completed work, reviewed by the employer"""
    __tablename__ = 'work_proofs'
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('microjobs.id'), nullable=False)
    application_id = db.Column(db.Integer, db.ForeignKey('application.id'), nullable=False)
    worker_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    employer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    description = db.Column(db.Text, nullable=False)
    proof_links = db.Column(db.Text)  # JSON array of URLs
    screenshots = db.Column(db.Text)  # JSON array of stored file names
    additional_notes = db.Column(db.Text)
    # submitted, approved, rejected, revision_requested, rejected_accepted, cancelled_by_worker, disputed
    status = db.Column(db.String(30), default='submitted', nullable=False)
    revision_count = db.Column(db.Integer, default=0)
    rejection_reason = db.Column(db.Text)
    revision_notes = db.Column(db.Text)
    rejection_deadline = db.Column(db.DateTime)
    revision_deadline = db.Column(db.DateTime)
    auto_processed = db.Column(db.Boolean, default=False)
    submitted_at = db.Column(db.DateTime, default=datetime.utcnow)
    reviewed_at = db.Column(db.DateTime)
    resolved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # A proof in one of these states blocks a new submission
    OPEN_STATUSES = ('submitted', 'rejected', 'revision_requested', 'disputed')
    FINAL_STATUSES = ('approved', 'rejected_accepted', 'cancelled_by_worker')

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'application_id': self.application_id,
            'worker_id': self.worker_id,
            'employer_id': self.employer_id,
            'description': self.description,
            'proof_links': json.loads(self.proof_links) if self.proof_links else [],
            'screenshots': [
                f"/uploads/work_proofs/{name}" for name in (json.loads(self.screenshots) if self.screenshots else [])
            ],
            'additional_notes': self.additional_notes,
            'status': self.status,
            'revision_count': self.revision_count or 0,
            'rejection_reason': self.rejection_reason,
            'revision_notes': self.revision_notes,
            'rejection_deadline': iso(self.rejection_deadline),
            'revision_deadline': iso(self.revision_deadline),
            'auto_processed': self.auto_processed,
            'submitted_at': iso(self.submitted_at),
            'reviewed_at': iso(self.reviewed_at),
            'resolved_at': iso(self.resolved_at)
        }

class Dispute(db.Model):
    """Worker escalation of a rejected work proof"""
    id = db.Column(db.Integer, primary_key=True)
    dispute_number = db.Column(db.String(50), unique=True, nullable=False)
    work_proof_id = db.Column(db.Integer, db.ForeignKey('work_proofs.id'), nullable=False)
    job_id = db.Column(db.Integer, db.ForeignKey('microjobs.id'), nullable=False)
    application_id = db.Column(db.Integer, db.ForeignKey('application.id'), nullable=False)
    worker_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    employer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    requested_action = db.Column(db.String(30), default='payment')  # payment, resubmission
    status = db.Column(db.String(30), default='pending')  # pending, under_review, resolved
    resolution = db.Column(db.Text)
    resolution_type = db.Column(db.String(30))  # release_payment, refund_employer, allow_resubmission
    resolved_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    resolved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    OPEN_STATUSES = ('pending', 'under_review')

    def to_dict(self):
        return {
            'id': self.id,
            'dispute_number': self.dispute_number,
            'work_proof_id': self.work_proof_id,
            'job_id': self.job_id,
            'application_id': self.application_id,
            'worker_id': self.worker_id,
            'employer_id': self.employer_id,
            'reason': self.reason,
            'requested_action': self.requested_action,
            'status': self.status,
            'resolution': self.resolution,
            'resolution_type': self.resolution_type,
            'resolved_by': self.resolved_by,
            'created_at': iso(self.created_at),
            'resolved_at': iso(self.resolved_at)
        }

class DisputeMessage(db.Model):
    """Model for messages within a dispute"""
    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey('dispute.id'), nullable=False)
    sender_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_admin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'dispute_id': self.dispute_id,
            'sender_id': self.sender_id,
            'message': self.message,
            'is_admin': self.is_admin,
            'created_at': iso(self.created_at)
        }

class Wallet(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    deposit_balance = db.Column(db.Float, default=0.0, nullable=False)  # spendable, not withdrawable
    earnings_balance = db.Column(db.Float, default=0.0, nullable=False)  # withdrawable
    held_balance = db.Column(db.Float, default=0.0, nullable=False)  # escrow funded as employer
    total_earned = db.Column(db.Float, default=0.0, nullable=False)
    total_spent = db.Column(db.Float, default=0.0, nullable=False)
    total_deposited = db.Column(db.Float, default=0.0, nullable=False)
    total_withdrawn = db.Column(db.Float, default=0.0, nullable=False)
    currency = db.Column(db.String(3), default='USD', nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def available_balance(self):
        return round((self.deposit_balance or 0) + (self.earnings_balance or 0), 2)

    def to_dict(self):
        return {
            'deposit_balance': round(self.deposit_balance or 0, 2),
            'earnings_balance': round(self.earnings_balance or 0, 2),
            'available_balance': self.available_balance,
            'held_balance': round(self.held_balance or 0, 2),
            'total_earned': round(self.total_earned or 0, 2),
            'total_spent': round(self.total_spent or 0, 2),
            'total_deposited': round(self.total_deposited or 0, 2),
            'total_withdrawn': round(self.total_withdrawn or 0, 2),
            'currency': self.currency
        }

class WalletTransaction(db.Model):
    """Ledger entry for every balance change"""
    __tablename__ = 'wallet_transactions'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    # deposit, withdrawal, earning, payment, refund, fee, transfer, penalty
    type = db.Column(db.String(20), nullable=False)
    balance_type = db.Column(db.String(20))  # deposit, earnings, held
    amount = db.Column(db.Float, nullable=False)
    fee = db.Column(db.Float, default=0.0)
    balance_before = db.Column(db.Float)
    balance_after = db.Column(db.Float)
    description = db.Column(db.String(500))
    reference_id = db.Column(db.String(100))
    reference_type = db.Column(db.String(30))  # deposit, withdrawal, escrow, job_payment, coin_cashout, chat_transfer, penalty
    status = db.Column(db.String(20), default='completed')  # pending, completed, failed
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'balance_type': self.balance_type,
            'amount': self.amount,
            'fee': self.fee,
            'balance_before': self.balance_before,
            'balance_after': self.balance_after,
            'description': self.description,
            'reference_id': self.reference_id,
            'reference_type': self.reference_type,
            'status': self.status,
            'created_at': iso(self.created_at)
        }

class PaymentMethod(db.Model):
    __tablename__ = 'payment_methods'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    method_type = db.Column(db.String(20), nullable=False)  # card, paypal, bank_account
    label = db.Column(db.String(100))
    last4 = db.Column(db.String(4))
    provider_reference = db.Column(db.String(100))  # Stripe payment method id
    is_default = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    METHOD_TYPES = ('card', 'paypal', 'bank_account')

    def to_dict(self):
        return {
            'id': self.id,
            'method_type': self.method_type,
            'label': self.label,
            'last4': self.last4,
            'is_default': self.is_default,
            'created_at': iso(self.created_at)
        }

class Withdrawal(db.Model):
    """Earnings withdrawal awaiting admin processing"""
    id = db.Column(db.Integer, primary_key=True)
    withdrawal_number = db.Column(db.String(50), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    fee = db.Column(db.Float, default=0.0)
    net_amount = db.Column(db.Float, nullable=False)
    payment_method_id = db.Column(db.Integer, db.ForeignKey('payment_methods.id'))
    status = db.Column(db.String(20), default='pending')  # pending, completed, rejected
    admin_notes = db.Column(db.Text)
    requested_at = db.Column(db.DateTime, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime)
    processed_by = db.Column(db.Integer, db.ForeignKey('user.id'))

    def to_dict(self):
        return {
            'id': self.id,
            'withdrawal_number': self.withdrawal_number,
            'user_id': self.user_id,
            'amount': self.amount,
            'fee': self.fee,
            'net_amount': self.net_amount,
            'payment_method_id': self.payment_method_id,
            'status': self.status,
            'admin_notes': self.admin_notes,
            'requested_at': iso(self.requested_at),
            'processed_at': iso(self.processed_at)
        }

class FeeSetting(db.Model):
    __tablename__ = 'admin_fee_settings'
    id = db.Column(db.Integer, primary_key=True)
    fee_type = db.Column(db.String(30), unique=True, nullable=False)  # deposit, withdrawal, job_payment
    fee_percentage = db.Column(db.Float, default=0.0)
    fee_fixed = db.Column(db.Float, default=0.0)
    minimum_fee = db.Column(db.Float, default=0.0)
    maximum_fee = db.Column(db.Float)
    is_active = db.Column(db.Boolean, default=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    FEE_TYPES = ('deposit', 'withdrawal', 'job_payment')

    def to_dict(self):
        return {
            'fee_type': self.fee_type,
            'fee_percentage': self.fee_percentage,
            'fee_fixed': self.fee_fixed,
            'minimum_fee': self.minimum_fee,
            'maximum_fee': self.maximum_fee,
            'is_active': self.is_active
        }

class UserCoins(db.Model):
    __tablename__ = 'user_coins'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    available_coins = db.Column(db.Integer, default=0, nullable=False)
    total_earned_coins = db.Column(db.Integer, default=0, nullable=False)
    total_cashed_out_coins = db.Column(db.Integer, default=0, nullable=False)
    last_collected_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'available_coins': self.available_coins,
            'total_earned_coins': self.total_earned_coins,
            'total_cashed_out_coins': self.total_cashed_out_coins,
            'last_collected_at': iso(self.last_collected_at)
        }

class CoinCashout(db.Model):
    __tablename__ = 'coin_cashouts'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    coins_amount = db.Column(db.Integer, nullable=False)
    coin_to_usd_rate = db.Column(db.Float, nullable=False)
    gross_amount = db.Column(db.Float, nullable=False)
    fee_amount = db.Column(db.Float, default=0.0)
    net_amount = db.Column(db.Float, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'coins_amount': self.coins_amount,
            'coin_to_usd_rate': self.coin_to_usd_rate,
            'gross_amount': self.gross_amount,
            'fee_amount': self.fee_amount,
            'net_amount': self.net_amount,
            'created_at': iso(self.created_at)
        }

class MarketplaceReview(db.Model):
    __tablename__ = 'marketplace_reviews'
    __table_args__ = (
        db.UniqueConstraint('order_id', 'reviewer_id', name='unique_review_per_order'),
    )
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(100), nullable=False)
    reviewer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    reviewee_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    reviewer_type = db.Column(db.String(20), nullable=False)  # buyer, seller
    rating = db.Column(db.Integer, nullable=False)  # 1-5 stars
    title = db.Column(db.String(200), nullable=False)
    comment = db.Column(db.Text, nullable=False)
    communication_rating = db.Column(db.Integer)
    quality_rating = db.Column(db.Integer)
    value_rating = db.Column(db.Integer)
    delivery_time_rating = db.Column(db.Integer)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    deleted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reviewer = db.relationship('User', foreign_keys=[reviewer_id])
    reviewee = db.relationship('User', foreign_keys=[reviewee_id])

    REVIEWER_TYPES = ('buyer', 'seller')
    SUB_RATINGS = ('communication_rating', 'quality_rating', 'value_rating', 'delivery_time_rating')

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'reviewer_id': self.reviewer_id,
            'reviewer': self.reviewer.public_dict() if self.reviewer else None,
            'reviewee_id': self.reviewee_id,
            'reviewer_type': self.reviewer_type,
            'rating': self.rating,
            'title': self.title,
            'comment': self.comment,
            'communication_rating': self.communication_rating,
            'quality_rating': self.quality_rating,
            'value_rating': self.value_rating,
            'delivery_time_rating': self.delivery_time_rating,
            'created_at': iso(self.created_at),
            'updated_at': iso(self.updated_at)
        }

class Notification(db.Model):
    """Model for user notifications"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)  # application, work_proof, dispute, payment, withdrawal
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    link = db.Column(db.String(500))
    related_id = db.Column(db.Integer)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    read_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'related_id': self.related_id,
            'is_read': self.is_read,
            'created_at': iso(self.created_at)
        }

class SiteSettings(db.Model):
    """Model for storing admin-tunable settings as JSON values"""
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.Text)
    description = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = db.Column(db.Integer, db.ForeignKey('user.id'))

class AuditLog(db.Model):
    """Audit trail for authentication, admin and financial events"""
    __tablename__ = 'audit_logs'
    id = db.Column(db.Integer, primary_key=True)
    event_category = db.Column(db.String(30), nullable=False)
    event_type = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(20), default='medium')
    user_id = db.Column(db.Integer)
    username = db.Column(db.String(80))
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(500))
    action = db.Column(db.String(255), nullable=False)
    resource_type = db.Column(db.String(50))
    resource_id = db.Column(db.String(50))
    status = db.Column(db.String(20), default='success')
    message = db.Column(db.Text)
    details = db.Column(db.Text)  # JSON
    request_method = db.Column(db.String(10))
    request_path = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

class ServerMetric(db.Model):
    __tablename__ = 'server_metrics'
    id = db.Column(db.Integer, primary_key=True)
    server_id = db.Column(db.String(100), nullable=False, default='main-server', index=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    cpu_usage_percent = db.Column(db.Float, nullable=False)
    cpu_cores = db.Column(db.Integer, default=1)
    cpu_temperature = db.Column(db.Float, default=0)
    load_average_1m = db.Column(db.Float, default=0)
    load_average_5m = db.Column(db.Float, default=0)
    load_average_15m = db.Column(db.Float, default=0)
    memory_total_gb = db.Column(db.Float, nullable=False)
    memory_used_gb = db.Column(db.Float, nullable=False)
    memory_free_gb = db.Column(db.Float)
    memory_usage_percent = db.Column(db.Float)
    disk_total_gb = db.Column(db.Float, nullable=False)
    disk_used_gb = db.Column(db.Float, nullable=False)
    disk_free_gb = db.Column(db.Float)
    disk_usage_percent = db.Column(db.Float)
    network_upload_mbps = db.Column(db.Float, default=0)
    network_download_mbps = db.Column(db.Float, default=0)
    uptime_seconds = db.Column(db.Integer, default=0)
    process_count = db.Column(db.Integer, default=0)

    def to_dict(self):
        return {
            'serverId': self.server_id,
            'cpu': {
                'usage': self.cpu_usage_percent,
                'cores': self.cpu_cores,
                'temperature': self.cpu_temperature
            },
            'memory': {
                'used': self.memory_used_gb,
                'total': self.memory_total_gb,
                'percentage': self.memory_usage_percent
            },
            'disk': {
                'used': self.disk_used_gb,
                'total': self.disk_total_gb,
                'percentage': self.disk_usage_percent
            },
            'network': {
                'upload': self.network_upload_mbps,
                'download': self.network_download_mbps
            },
            'uptime': self.uptime_seconds,
            'processCount': self.process_count,
            'loadAverage': [self.load_average_1m, self.load_average_5m, self.load_average_15m],
            'lastUpdated': iso(self.timestamp)
        }

class ServerStatus(db.Model):
    __tablename__ = 'server_status'
    id = db.Column(db.Integer, primary_key=True)
    server_id = db.Column(db.String(100), nullable=False, default='main-server', index=True)
    database_status = db.Column(db.String(20), default='unknown')
    db_connections_active = db.Column(db.Integer, default=0)
    db_connections_max = db.Column(db.Integer, default=100)
    db_size_mb = db.Column(db.Float)
    db_version = db.Column(db.String(100))
    application_status = db.Column(db.String(20), default='unknown')
    active_users = db.Column(db.Integer, default=0)
    response_time_ms = db.Column(db.Float, default=0)
    error_rate_percent = db.Column(db.Float, default=0)
    requests_per_minute = db.Column(db.Integer, default=0)
    web_server_status = db.Column(db.String(20), default='unknown')
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'serverId': self.server_id,
            'database': {
                'status': self.database_status,
                'connections': {
                    'active': self.db_connections_active,
                    'max': self.db_connections_max
                },
                'size': self.db_size_mb,
                'version': self.db_version
            },
            'application': {
                'status': self.application_status,
                'activeUsers': self.active_users,
                'responseTime': self.response_time_ms,
                'errorRate': self.error_rate_percent,
                'requestsPerMinute': self.requests_per_minute
            },
            'webServer': {
                'status': self.web_server_status
            },
            'lastUpdated': iso(self.created_at)
        }

class MonitoringAlert(db.Model):
    __tablename__ = 'monitoring_alerts'
    id = db.Column(db.Integer, primary_key=True)
    alert_name = db.Column(db.String(200), nullable=False)
    alert_type = db.Column(db.String(20), nullable=False)  # cpu, memory, disk, network, service
    threshold_value = db.Column(db.Float, nullable=False)
    threshold_operator = db.Column(db.String(2), nullable=False)
    severity = db.Column(db.String(20), default='warning')  # info, warning, critical
    is_enabled = db.Column(db.Boolean, default=True)
    notification_email = db.Column(db.String(120))
    notification_webhook = db.Column(db.String(500))
    cooldown_minutes = db.Column(db.Integer, default=15)
    trigger_count = db.Column(db.Integer, default=0)
    last_triggered_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    SEVERITY_RANK = {'critical': 3, 'warning': 2, 'info': 1}

    def to_dict(self, notification_count=0, last_notification=None):
        return {
            'id': self.id,
            'name': self.alert_name,
            'type': self.alert_type,
            'threshold': {
                'value': self.threshold_value,
                'operator': self.threshold_operator
            },
            'severity': self.severity,
            'isEnabled': self.is_enabled,
            'notifications': {
                'email': self.notification_email,
                'webhook': self.notification_webhook
            },
            'cooldownMinutes': self.cooldown_minutes,
            'stats': {
                'triggerCount': self.trigger_count or 0,
                'lastTriggered': iso(self.last_triggered_at),
                'notificationCount': notification_count,
                'lastNotification': iso(last_notification)
            },
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }

class MonitoringNotification(db.Model):
    __tablename__ = 'monitoring_notifications'
    id = db.Column(db.Integer, primary_key=True)
    alert_id = db.Column(db.Integer, db.ForeignKey('monitoring_alerts.id', ondelete='CASCADE'), nullable=False)
    server_id = db.Column(db.String(100), nullable=False, default='main-server')
    alert_message = db.Column(db.Text, nullable=False)
    metric_value = db.Column(db.Float)
    threshold_value = db.Column(db.Float)
    notification_sent = db.Column(db.Boolean, default=False)
    notification_method = db.Column(db.String(50))
    resolved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    alert = db.relationship('MonitoringAlert')

    def to_dict(self):
        alert = self.alert
        return {
            'id': self.id,
            'alertId': self.alert_id,
            'alertName': alert.alert_name if alert else None,
            'alertType': alert.alert_type if alert else None,
            'severity': alert.severity if alert else None,
            'serverId': self.server_id,
            'message': self.alert_message,
            'metricValue': self.metric_value,
            'thresholdValue': self.threshold_value,
            'notificationSent': self.notification_sent,
            'notificationMethod': self.notification_method,
            'resolvedAt': iso(self.resolved_at),
            'createdAt': iso(self.created_at)
        }

class EarningsNews(db.Model):
    __tablename__ = 'earnings_news'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    summary = db.Column(db.Text)
    content = db.Column(db.Text)
    image_url = db.Column(db.String(500))
    amount = db.Column(db.Float)
    currency = db.Column(db.String(3), default='USD')
    source_url = db.Column(db.String(500))
    countries = db.Column(db.Text)  # JSON array of ISO codes, empty means all countries
    is_published = db.Column(db.Boolean, default=True)
    published_at = db.Column(db.DateTime, default=datetime.utcnow)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'summary': self.summary,
            'content': self.content,
            'image_url': self.image_url,
            'amount': self.amount,
            'currency': self.currency,
            'source_url': self.source_url,
            'countries': json.loads(self.countries) if self.countries else [],
            'is_published': self.is_published,
            'published_at': iso(self.published_at)
        }

security_logger = init_security_logger(app, db, AuditLog, User)
job_algorithm = MicrojobAlgorithmService(db, RotationTracking)
monitoring = MonitoringService(db, ServerMetric, ServerStatus, MonitoringAlert, MonitoringNotification, email_service)

# Settings defaults (stored as JSON in SiteSettings, merged over these)
DEFAULT_REVISION_SETTINGS = {
    'revision_request_timeout': 24,
    'revision_request_timeout_unit': 'hours',
    'rejection_response_timeout': 24,
    'rejection_response_timeout_unit': 'hours',
    'max_revision_requests': 2,
    'refund_on_revision_timeout': True,
    'refund_on_rejection_timeout': True,
    'revision_penalty_enabled': False,
    'revision_penalty_amount': 0.0
}

DEFAULT_COIN_SETTINGS = {
    'is_enabled': True,
    'coin_to_usd_rate': 0.001,
    'min_cashout_coins': 1000,
    'cashout_fee_percentage': 0.0,
    'daily_reward_coins': 50
}

DEFAULT_FEE_SETTINGS = {
    'deposit': {'fee_percentage': 2.9, 'fee_fixed': 0.30, 'minimum_fee': 0.0, 'maximum_fee': None},
    'withdrawal': {'fee_percentage': 2.0, 'fee_fixed': 0.0, 'minimum_fee': 1.00, 'maximum_fee': 25.00},
    'job_payment': {'fee_percentage': 5.0, 'fee_fixed': 0.0, 'minimum_fee': 0.0, 'maximum_fee': None}
}

TIMEOUT_UNITS = {'minutes': 1, 'hours': 60, 'days': 1440}

def get_site_setting(key, default=None):
    """Get a site setting value"""
    setting = SiteSettings.query.filter_by(key=key).first()
    return setting.value if setting else default

def set_site_setting(key, value, description=None, user_id=None):
    """Set a site setting value"""
    setting = SiteSettings.query.filter_by(key=key).first()
    if setting:
        setting.value = value
        if description:
            setting.description = description
        if user_id:
            setting.updated_by = user_id
    else:
        setting = SiteSettings(key=key, value=value, description=description, updated_by=user_id)
        db.session.add(setting)
    db.session.commit()
    return setting

def get_json_setting(key, defaults):
    """Read a JSON site setting merged over its defaults"""
    merged = dict(defaults)
    raw = get_site_setting(key)
    if raw:
        try:
            stored = json.loads(raw)
            if isinstance(stored, dict):
                merged.update(stored)
        except ValueError:
            app.logger.warning(f"Ignoring malformed JSON in site setting {key}")
    return merged

def get_revision_settings():
    return get_json_setting('revision_settings', DEFAULT_REVISION_SETTINGS)

def get_coin_settings():
    return get_json_setting('coin_system', DEFAULT_COIN_SETTINGS)

def get_algorithm_settings():
    return job_algorithm.normalize_settings(
        get_json_setting('microjob_algorithm', MicrojobAlgorithmService.DEFAULT_SETTINGS)
    )

def job_approval_required():
    return parse_bool(get_site_setting('job_approval_required', 'false'))

def timeout_delta(value, unit):
    """Convert a timeout setting to a timedelta"""
    return timedelta(minutes=float(value) * TIMEOUT_UNITS.get(unit, TIMEOUT_UNITS['hours']))

def validate_revision_settings(data):
    """Validate an admin update of the revision settings; returns (settings, error)"""
    settings = get_revision_settings()

    for key in ('revision_request_timeout', 'rejection_response_timeout'):
        if key in data:
            value = parse_amount(data[key])
            if value is None or value <= 0:
                return None, f'{key} must be a positive number'
            settings[key] = value

    for key in ('revision_request_timeout_unit', 'rejection_response_timeout_unit'):
        if key in data:
            if data[key] not in TIMEOUT_UNITS:
                return None, f'{key} must be one of: {", ".join(TIMEOUT_UNITS)}'
            settings[key] = data[key]

    if 'max_revision_requests' in data:
        value = parse_int(data['max_revision_requests'])
        if value is None or value < 0 or value > 10:
            return None, 'max_revision_requests must be between 0 and 10'
        settings['max_revision_requests'] = value

    for key in ('refund_on_revision_timeout', 'refund_on_rejection_timeout', 'revision_penalty_enabled'):
        if key in data:
            settings[key] = parse_bool(data[key])

    if 'revision_penalty_amount' in data:
        value = parse_amount(data['revision_penalty_amount'])
        if value is None or value < 0:
            return None, 'revision_penalty_amount must be zero or more'
        settings['revision_penalty_amount'] = value

    return settings, None

def notify(user_id, notification_type, title, message, link=None, related_id=None):
    """Queue an in-app notification (committed with the caller's transaction)"""
    db.session.add(Notification(
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        message=message,
        link=link,
        related_id=related_id
    ))

def touch_user_activity(user):
    user.last_active_at = datetime.utcnow()

# Wallet helpers. None of these commit; callers commit or roll back as a unit.
def get_or_create_wallet(user_id):
    wallet = Wallet.query.filter_by(user_id=user_id).first()
    if not wallet:
        wallet = Wallet(
            user_id=user_id,
            deposit_balance=0.0,
            earnings_balance=0.0,
            held_balance=0.0,
            total_earned=0.0,
            total_spent=0.0,
            total_deposited=0.0,
            total_withdrawn=0.0
        )
        db.session.add(wallet)
        db.session.flush()
    return wallet

def record_transaction(user_id, type, amount, balance_type=None, balance_before=None, balance_after=None,
                       description=None, reference_id=None, reference_type=None, fee=0.0, status='completed'):
    transaction = WalletTransaction(
        user_id=user_id,
        type=type,
        balance_type=balance_type,
        amount=round(amount, 2),
        fee=round(fee or 0, 2),
        balance_before=round(balance_before, 2) if balance_before is not None else None,
        balance_after=round(balance_after, 2) if balance_after is not None else None,
        description=description,
        reference_id=str(reference_id) if reference_id is not None else None,
        reference_type=reference_type,
        status=status
    )
    db.session.add(transaction)
    return transaction

def record_platform_fee(payer_id, amount, description, reference_id=None, reference_type=None):
    """Platform revenue entry, shown to the payer as a debit; analytics sums these"""
    if amount <= 0:
        return None
    return record_transaction(
        payer_id, 'fee', -amount,
        description=description,
        reference_id=reference_id,
        reference_type=reference_type
    )

def get_fee_setting(fee_type):
    return FeeSetting.query.filter_by(fee_type=fee_type).first()

def calculate_fee(amount, fee_setting):
    """
    Fee for an amount under a fee schedule.

    fee = amount * percentage / 100 + fixed, clamped to [minimum, maximum] and
    never above the amount itself. Inactive or missing schedules charge nothing.
    """
    if not fee_setting or not fee_setting.is_active or amount <= 0:
        return 0.0

    fee = amount * (fee_setting.fee_percentage or 0) / 100 + (fee_setting.fee_fixed or 0)
    if fee_setting.minimum_fee and fee < fee_setting.minimum_fee:
        fee = fee_setting.minimum_fee
    if fee_setting.maximum_fee is not None and fee > fee_setting.maximum_fee:
        fee = fee_setting.maximum_fee
    return round(min(fee, amount), 2)

def fund_escrow(application, job, amount):
    """
    Hold ``amount`` from the employer's wallet for an accepted application.
    Deposit balance is spent first, then earnings.

    Returns:
        tuple: (escrow or None, error message or None)
    """
    wallet = get_or_create_wallet(job.employer_id)
    if wallet.available_balance + 1e-9 < amount:
        return None, f'Insufficient balance. {amount:.2f} is required to accept this application'

    from_deposit = min(wallet.deposit_balance, amount)
    from_earnings = round(amount - from_deposit, 2)

    if from_deposit > 0:
        before = wallet.deposit_balance
        wallet.deposit_balance = round(wallet.deposit_balance - from_deposit, 2)
        record_transaction(job.employer_id, 'payment', -from_deposit, 'deposit', before, wallet.deposit_balance,
                           f'Escrow for job: {job.title}', application.id, 'escrow')
    if from_earnings > 0:
        before = wallet.earnings_balance
        wallet.earnings_balance = round(wallet.earnings_balance - from_earnings, 2)
        record_transaction(job.employer_id, 'payment', -from_earnings, 'earnings', before, wallet.earnings_balance,
                           f'Escrow for job: {job.title}', application.id, 'escrow')

    wallet.held_balance = round(wallet.held_balance + amount, 2)

    escrow = Escrow(
        application_id=application.id,
        job_id=job.id,
        employer_id=job.employer_id,
        worker_id=application.applicant_id,
        amount=amount,
        status='funded',
        funded_at=datetime.utcnow()
    )
    db.session.add(escrow)
    return escrow, None

def release_escrow_to_worker(escrow, job):
    """Pay the worker from escrow, less the job-payment platform fee"""
    fee = calculate_fee(escrow.amount, get_fee_setting('job_payment'))
    net = round(escrow.amount - fee, 2)

    employer_wallet = get_or_create_wallet(escrow.employer_id)
    employer_wallet.held_balance = round(max(0.0, employer_wallet.held_balance - escrow.amount), 2)
    employer_wallet.total_spent = round(employer_wallet.total_spent + escrow.amount, 2)

    worker_wallet = get_or_create_wallet(escrow.worker_id)
    before = worker_wallet.earnings_balance
    worker_wallet.earnings_balance = round(worker_wallet.earnings_balance + net, 2)
    worker_wallet.total_earned = round(worker_wallet.total_earned + net, 2)

    record_transaction(escrow.worker_id, 'earning', net, 'earnings', before, worker_wallet.earnings_balance,
                       f'Payment for job: {job.title}', escrow.id, 'job_payment', fee=fee)
    record_platform_fee(escrow.worker_id, fee, f'Platform fee for job: {job.title}', escrow.id, 'job_payment')

    escrow.status = 'released'
    escrow.platform_fee = fee
    escrow.net_amount = net
    escrow.released_at = datetime.utcnow()
    return escrow

def refund_escrow_to_employer(escrow, job, reason):
    """Return held funds to the employer's deposit balance"""
    wallet = get_or_create_wallet(escrow.employer_id)
    before = wallet.deposit_balance
    wallet.held_balance = round(max(0.0, wallet.held_balance - escrow.amount), 2)
    wallet.deposit_balance = round(wallet.deposit_balance + escrow.amount, 2)

    record_transaction(escrow.employer_id, 'refund', escrow.amount, 'deposit', before, wallet.deposit_balance,
                       f'Refund for job: {job.title} ({reason})', escrow.id, 'escrow')

    escrow.status = 'refunded'
    escrow.refund_reason = reason
    escrow.refunded_at = datetime.utcnow()
    return escrow

def apply_revision_penalty(proof, amount):
    """Deduct the revision-timeout penalty from the worker's earnings, capped at the balance"""
    wallet = get_or_create_wallet(proof.worker_id)
    penalty = round(min(amount, wallet.earnings_balance), 2)
    if penalty <= 0:
        return 0.0

    before = wallet.earnings_balance
    wallet.earnings_balance = round(wallet.earnings_balance - penalty, 2)
    record_transaction(proof.worker_id, 'penalty', -penalty, 'earnings', before, wallet.earnings_balance,
                       'Penalty for missed revision deadline', proof.id, 'penalty')
    return penalty

def complete_application(application, job):
    application.status = 'completed'
    db.session.flush()
    completed = Application.query.filter_by(job_id=job.id, status='completed').count()
    if completed >= job.workers_needed:
        job.status = 'completed'

def release_job_slot(application, job):
    application.status = 'cancelled'
    job.applications_count = max(0, (job.applications_count or 0) - 1)

# Work proof state machine
def approve_work_proof(proof, now=None):
    """submitted/disputed -> approved: pay the worker and complete the application"""
    now = now or datetime.utcnow()
    job = db.session.get(Microjob, proof.job_id)
    application = db.session.get(Application, proof.application_id)
    escrow = Escrow.query.filter_by(application_id=proof.application_id).first()

    if escrow and escrow.status in ('funded', 'disputed'):
        release_escrow_to_worker(escrow, job)

    proof.status = 'approved'
    proof.reviewed_at = proof.reviewed_at or now
    proof.resolved_at = now
    proof.rejection_deadline = None
    proof.revision_deadline = None
    complete_application(application, job)

    notify(proof.worker_id, 'work_proof', 'Work Approved',
           f'Your work for "{job.title}" was approved and payment released.',
           f'/jobs/{job.id}', proof.id)
    return escrow

def refund_work_proof(proof, final_status, reason, now=None, auto=False):
    """
    Close a proof as rejected_accepted or cancelled_by_worker and refund the employer.
    The application is cancelled and its worker slot reopened.
    """
    now = now or datetime.utcnow()
    job = db.session.get(Microjob, proof.job_id)
    application = db.session.get(Application, proof.application_id)
    escrow = Escrow.query.filter_by(application_id=proof.application_id).first()

    if escrow and escrow.status in ('funded', 'disputed'):
        refund_escrow_to_employer(escrow, job, reason)

    proof.status = final_status
    proof.auto_processed = auto
    proof.resolved_at = now
    proof.rejection_deadline = None
    proof.revision_deadline = None
    release_job_slot(application, job)

    notify(proof.employer_id, 'work_proof', 'Escrow Refunded',
           f'Funds for "{job.title}" were returned to your wallet ({reason}).',
           f'/jobs/{job.id}', proof.id)
    notify(proof.worker_id, 'work_proof', 'Job Closed',
           f'Your assignment for "{job.title}" was closed ({reason}).',
           f'/applied-jobs', proof.id)
    return escrow

def sweep_expired_work_proofs(now=None):
    """
    Auto-process work proofs whose response deadline passed.

    Expired rejections are treated as accepted by the worker and refunded.
    Expired revision requests cancel the assignment, refund the employer and
    apply the configured penalty. Each proof commits on its own.

    Returns:
        dict: counts of processed and failed proofs
    """
    now = now or datetime.utcnow()
    settings = get_revision_settings()
    summary = {'processed': 0, 'failed': 0, 'rejections_refunded': 0, 'revisions_cancelled': 0}

    candidates = []
    if settings['refund_on_rejection_timeout']:
        candidates += WorkProof.query.filter(
            WorkProof.status == 'rejected',
            WorkProof.rejection_deadline.isnot(None),
            WorkProof.rejection_deadline <= now
        ).all()
    if settings['refund_on_revision_timeout']:
        candidates += WorkProof.query.filter(
            WorkProof.status == 'revision_requested',
            WorkProof.revision_deadline.isnot(None),
            WorkProof.revision_deadline <= now
        ).all()

    for proof in candidates:
        proof_id = proof.id
        try:
            if proof.status == 'rejected':
                escrow = refund_work_proof(proof, 'rejected_accepted', 'rejection response deadline passed',
                                           now=now, auto=True)
                summary['rejections_refunded'] += 1
            else:
                escrow = refund_work_proof(proof, 'cancelled_by_worker', 'revision deadline passed',
                                           now=now, auto=True)
                if settings['revision_penalty_enabled'] and settings['revision_penalty_amount'] > 0:
                    apply_revision_penalty(proof, float(settings['revision_penalty_amount']))
                summary['revisions_cancelled'] += 1

            db.session.commit()
            summary['processed'] += 1

            if escrow is not None:
                security_logger.log_financial(
                    'escrow_auto_refund',
                    f'Auto refund for work proof {proof_id}',
                    escrow.amount, 'escrow', escrow.id,
                    user_id=escrow.employer_id
                )
        except Exception as e:
            db.session.rollback()
            summary['failed'] += 1
            app.logger.error(f"Work proof timeout error (proof {proof_id}): {str(e)}")

    return summary

# Applied-jobs view helpers
DISPLAY_PRIORITY = {
    'rejected': 1,
    'revision_requested': 2,
    'ready': 3,
    'submitted': 4,
    'completed': 5,
    'disputed': 6,
    'auto_cancelled': 7,
    'auto_refunded': 8
}

def display_status(application, proof):
    """Status shown to the worker for one application"""
    if proof:
        if proof.status == 'cancelled_by_worker' and proof.auto_processed:
            return 'auto_cancelled'
        if proof.status == 'rejected_accepted' and proof.auto_processed:
            return 'auto_refunded'
        if proof.status == 'approved':
            return 'completed'
        return proof.status
    if application.status == 'accepted':
        return 'ready'
    return application.status

def format_countdown(deadline, status, now=None):
    """
    Server-side countdown for a pending deadline.

    Returns:
        dict with text ("5h 3m left", "EXPIRED", "AUTO_PROCESSED", ...),
        seconds_remaining and expired; None when there is no deadline
    """
    if status in ('cancelled_by_worker', 'rejected_accepted'):
        return {'text': 'AUTO_PROCESSED', 'seconds_remaining': 0, 'expired': True}
    if not deadline:
        return None

    now = now or datetime.utcnow()
    remaining = int((deadline - now).total_seconds())
    if remaining <= 0:
        return {'text': 'EXPIRED', 'seconds_remaining': 0, 'expired': True}

    hours, rest = divmod(remaining, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        text = f'{hours}h {minutes}m left'
    elif minutes:
        text = f'{minutes}m {seconds}s left'
    else:
        text = f'{seconds}s left'
    return {'text': text, 'seconds_remaining': remaining, 'expired': False}

def latest_work_proof(application_id):
    return WorkProof.query.filter_by(application_id=application_id).order_by(
        WorkProof.created_at.desc(), WorkProof.id.desc()
    ).first()

def save_screenshots(files):
    """Store uploaded screenshots; returns (stored names, error)"""
    uploads = [file for file in files if file and file.filename]
    if len(uploads) > MAX_SCREENSHOTS:
        return None, f'At most {MAX_SCREENSHOTS} screenshots are allowed'

    # Validate the whole batch before anything touches the disk
    for file in uploads:
        if not allowed_file(file.filename):
            return None, f'File type not allowed: {file.filename}'
        file.seek(0, 2)
        file_size = file.tell()
        file.seek(0)
        if file_size > MAX_FILE_SIZE:
            return None, f'File too large: {file.filename} (max 5MB)'

    stored = []
    try:
        for file in uploads:
            filename = f"{uuid.uuid4().hex}_{secure_filename(file.filename) or 'screenshot'}"
            file.save(os.path.join(app.config['UPLOAD_FOLDER'], 'work_proofs', filename))
            stored.append(filename)
    except Exception:
        remove_screenshots(stored)
        raise
    return stored, None

def remove_screenshots(filenames):
    """Delete stored screenshots that no committed work proof references"""
    for filename in filenames or []:
        path = os.path.join(app.config['UPLOAD_FOLDER'], 'work_proofs', filename)
        try:
            os.remove(path)
        except OSError as e:
            app.logger.warning(f"Could not remove screenshot {filename}: {str(e)}")

def parse_links(value):
    """Accept a JSON list, a list, or newline/comma separated URLs"""
    if not value:
        return []
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = re.split(r'[\n,]+', value)
        value = parsed if isinstance(parsed, list) else [parsed]
    links = []
    for link in value:
        link = sanitize_input(str(link), max_length=500)
        if not link:
            continue
        if not re.match(r'^https?://', link, re.IGNORECASE):
            return None
        links.append(link)
    return links

def recalculate_user_rating(user_id):
    """Recompute a user's rating from their non-deleted marketplace reviews"""
    result = db.session.query(
        func.avg(MarketplaceReview.rating), func.count(MarketplaceReview.id)
    ).filter(
        MarketplaceReview.reviewee_id == user_id,
        MarketplaceReview.is_deleted.is_(False)
    ).first()
    user = db.session.get(User, user_id)
    if user:
        user.rating = round(float(result[0]), 2) if result and result[0] is not None else 0.0
        user.review_count = result[1] if result else 0

@app.route('/api/health')
def health():
    return jsonify({'status': 'ok', 'timestamp': datetime.utcnow().isoformat()}), 200

@app.route('/api/register', methods=['POST'])
@rate_limit(max_attempts=10, window_minutes=60, lockout_minutes=15)
def register():
    try:
        data = request.get_json(silent=True)

        if not data or not data.get('email') or not data.get('username') or not data.get('password'):
            return jsonify({'error': 'Missing required fields'}), 400

        try:
            email_info = validate_email(data['email'], check_deliverability=False)
            email = email_info.normalized
        except EmailNotValidError as e:
            return jsonify({'error': f'Invalid email: {str(e)}'}), 400

        is_valid, message = validate_username(data['username'])
        if not is_valid:
            return jsonify({'error': message}), 400

        is_valid, message = validate_password_strength(data['password'])
        if not is_valid:
            return jsonify({'error': message}), 400

        if User.query.filter(func.lower(User.email) == email.lower()).first():
            return jsonify({'error': 'Email already registered'}), 400

        if User.query.filter(func.lower(User.username) == data['username'].lower()).first():
            return jsonify({'error': 'Username already taken'}), 400

        new_user = User(
            username=data['username'],
            email=email,
            password_hash=generate_password_hash(data['password']),
            first_name=sanitize_input(data.get('first_name', ''), max_length=80),
            last_name=sanitize_input(data.get('last_name', ''), max_length=80),
            country=sanitize_input(data.get('country', ''), max_length=100) or 'United States',
            last_active_at=datetime.utcnow()
        )
        db.session.add(new_user)
        db.session.flush()
        get_or_create_wallet(new_user.id)
        db.session.commit()

        session['user_id'] = new_user.id
        session.permanent = True

        reset_rate_limit(request.remote_addr)
        security_logger.log_authentication('registration', new_user.username, 'success', user_id=new_user.id)

        return jsonify({
            'message': 'Registration successful',
            'user': new_user.to_dict()
        }), 201
    except Exception as e:
        db.session.rollback()
        # Log the error but don't expose details to user
        app.logger.error(f"Registration error: {str(e)}")
        return jsonify({'error': 'Registration failed. Please try again.'}), 500

@app.route('/api/login', methods=['POST'])
@rate_limit(max_attempts=5, window_minutes=15, lockout_minutes=30)
def login():
    try:
        data = request.get_json(silent=True)

        if not data or not data.get('email') or not data.get('password'):
            return jsonify({'error': 'Missing email or password'}), 400

        try:
            email_info = validate_email(data['email'], check_deliverability=False)
            email = email_info.normalized
        except EmailNotValidError:
            return jsonify({'error': 'Invalid credentials'}), 401

        user = User.query.filter(func.lower(User.email) == email.lower()).first()

        if user and check_password_hash(user.password_hash, data['password']):
            if user.is_suspended:
                security_logger.log_authentication('login_blocked', user.username, 'blocked',
                                                   message='Suspended account', user_id=user.id)
                return jsonify({
                    'error': f'Your account has been suspended. Reason: {user.suspension_reason or "Not specified"}'
                }), 403

            session['user_id'] = user.id
            session.permanent = True
            touch_user_activity(user)
            db.session.commit()

            reset_rate_limit(request.remote_addr)
            security_logger.log_authentication('login_success', user.username, 'success', user_id=user.id)

            return jsonify({
                'message': 'Login successful',
                'user': user.to_dict()
            }), 200

        security_logger.log_authentication('login_failure', data.get('email'), 'failure')
        # Generic error message to prevent user enumeration
        return jsonify({'error': 'Invalid credentials'}), 401
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Login error: {str(e)}")
        return jsonify({'error': 'Login failed. Please try again.'}), 500

@app.route('/api/logout', methods=['POST'])
def logout():
    session.pop('user_id', None)
    return jsonify({'message': 'Logged out successfully'}), 200

@app.route('/api/profile', methods=['GET'])
@login_required
def get_profile():
    user = db.session.get(User, session['user_id'])
    wallet = Wallet.query.filter_by(user_id=user.id).first()
    data = user.to_dict()
    data['wallet'] = wallet.to_dict() if wallet else None
    return jsonify(data), 200

@app.route('/api/profile', methods=['PUT'])
@login_required
def update_profile():
    try:
        user = db.session.get(User, session['user_id'])
        data = request.get_json(silent=True) or {}

        if 'first_name' in data:
            user.first_name = sanitize_input(data['first_name'], max_length=80)
        if 'last_name' in data:
            user.last_name = sanitize_input(data['last_name'], max_length=80)
        if 'bio' in data:
            user.bio = sanitize_input(data['bio'], max_length=2000)
        if 'country' in data:
            user.country = sanitize_input(data['country'], max_length=100) or user.country
        if 'avatar_url' in data:
            avatar_url = sanitize_input(data['avatar_url'], max_length=500)
            if avatar_url and not re.match(r'^https?://', avatar_url):
                return jsonify({'error': 'Avatar URL must start with http:// or https://'}), 400
            user.avatar_url = avatar_url

        db.session.commit()
        return jsonify({'message': 'Profile updated', 'user': user.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update profile error: {str(e)}")
        return jsonify({'error': 'Failed to update profile'}), 500

@app.route('/api/categories', methods=['GET'])
def get_categories():
    try:
        categories = Category.query.order_by(Category.name).all()
        return jsonify([c.to_dict() for c in categories]), 200
    except Exception as e:
        app.logger.error(f"Get categories error: {str(e)}")
        return jsonify({'error': 'Failed to get categories'}), 500

@app.route('/api/jobs', methods=['GET'])
@api_rate_limit(requests_per_minute=120)
def get_jobs():
    try:
        category = sanitize_input(request.args.get('category', ''), max_length=100)
        location = sanitize_input(request.args.get('location', ''), max_length=100)
        search = sanitize_input(request.args.get('search', ''), max_length=200)
        remote = request.args.get('remote', '').lower()
        budget_min = parse_amount(request.args.get('budgetMin'))
        budget_max = parse_amount(request.args.get('budgetMax'))

        query = Microjob.query.filter(Microjob.status.in_(Microjob.LISTED_STATUSES))

        if category and category != 'all':
            if category.isdigit():
                query = query.filter(Microjob.category_id == int(category))
            else:
                query = query.join(Category, Microjob.category_id == Category.id).filter(Category.slug == category)

        if location:
            query = query.filter(Microjob.location.ilike(f'%{location}%'))

        if search:
            query = query.filter(or_(
                Microjob.title.ilike(f'%{search}%'),
                Microjob.description.ilike(f'%{search}%')
            ))

        if remote in ('true', 'false'):
            query = query.filter(Microjob.is_remote == (remote == 'true'))

        # Range overlap, only when both bounds are given
        if budget_min is not None and budget_max is not None:
            query = query.filter(Microjob.budget_max >= budget_min, Microjob.budget_min <= budget_max)

        jobs = query.all()
        settings = get_algorithm_settings()
        ordered = job_algorithm.order_jobs(jobs, settings)

        return jsonify({
            'jobs': [job.to_dict() for job in ordered],
            'algorithm': {
                'type': settings['algorithm_type'],
                'enabled': settings['is_enabled'],
                'rotation_hours': settings['rotation_hours']
            }
        }), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Get jobs error: {str(e)}")
        return jsonify({'error': 'Failed to fetch jobs'}), 500

@app.route('/api/jobs', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=20)
def create_job():
    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}

        title = sanitize_input(data.get('title', ''), max_length=200)
        description = sanitize_input(data.get('description', ''), max_length=5000)
        if not title or not description:
            return jsonify({'error': 'Title and description are required'}), 400

        budget_min = parse_amount(data.get('budget_min'))
        budget_max = parse_amount(data.get('budget_max', data.get('budget_min')))
        if budget_min is None or budget_max is None:
            return jsonify({'error': 'Budget is required'}), 400
        if budget_min <= 0 or budget_max < budget_min:
            return jsonify({'error': 'Budget must be positive and budget_max must be at least budget_min'}), 400
        if budget_max > MAX_DEPOSIT:
            return jsonify({'error': f'Budget cannot exceed {MAX_DEPOSIT:.2f}'}), 400

        workers_needed = parse_int(data.get('workers_needed', 1))
        if workers_needed is None or workers_needed < 1 or workers_needed > 1000:
            return jsonify({'error': 'workers_needed must be between 1 and 1000'}), 400

        category_id = data.get('category_id')
        if category_id is not None:
            category_id = parse_int(category_id)
            if category_id is None or not db.session.get(Category, category_id):
                return jsonify({'error': 'Invalid category'}), 400

        deadline = None
        if data.get('deadline'):
            try:
                deadline = datetime.fromisoformat(str(data['deadline']).replace('Z', '+00:00')).replace(tzinfo=None)
            except ValueError:
                return jsonify({'error': 'Invalid deadline format'}), 400
            if deadline <= datetime.utcnow():
                return jsonify({'error': 'Deadline must be in the future'}), 400

        thumbnail_url = sanitize_input(data.get('thumbnail_url', ''), max_length=500)
        if thumbnail_url and not re.match(r'^https?://', thumbnail_url):
            return jsonify({'error': 'Thumbnail URL must start with http:// or https://'}), 400

        job = Microjob(
            title=title,
            description=description,
            instructions=sanitize_input(data.get('instructions', ''), max_length=5000),
            category_id=category_id,
            employer_id=user_id,
            budget_min=budget_min,
            budget_max=budget_max,
            deadline=deadline,
            location=sanitize_input(data.get('location', ''), max_length=100),
            is_remote=parse_bool(data.get('is_remote', True)),
            workers_needed=workers_needed,
            applications_count=0,
            thumbnail_url=thumbnail_url or None,
            status='pending' if job_approval_required() else 'open'
        )
        db.session.add(job)
        touch_user_activity(db.session.get(User, user_id))
        db.session.commit()

        message = 'Job submitted for review' if job.status == 'pending' else 'Job posted successfully'
        return jsonify({'message': message, 'job': job.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create job error: {str(e)}")
        return jsonify({'error': 'Failed to create job'}), 500

@app.route('/api/jobs', methods=['PUT'])
@login_required
def update_job_workers():
    """Change how many workers a job needs (owner only)"""
    data = request.get_json(silent=True) or {}
    job_id = data.get('jobId')
    new_count = data.get('newWorkerCount')

    if job_id is None or new_count is None:
        return jsonify({'success': False, 'message': 'Missing required fields'}), 400

    user_id = session['user_id']
    if data.get('userId') is not None and parse_int(data.get('userId')) != user_id:
        return jsonify({'success': False, 'message': 'User does not match the current session'}), 403

    try:
        new_count = parse_int(new_count)
        if new_count is None or new_count < 1 or new_count > 1000:
            return jsonify({'success': False, 'message': 'Worker count must be between 1 and 1000'}), 400

        job = db.session.get(Microjob, parse_int(job_id, 0))
        if not job:
            return jsonify({'success': False, 'message': 'Job not found'}), 404

        if job.employer_id != user_id:
            return jsonify({'success': False, 'message': 'Only the job owner can change the worker count'}), 403

        if job.status in ('completed', 'cancelled', 'rejected'):
            return jsonify({'success': False, 'message': f'Cannot change workers on a {job.status} job'}), 400

        slots_in_use = Application.query.filter(
            Application.job_id == job.id,
            Application.status.in_(Application.ACTIVE_STATUSES)
        ).count()
        if new_count < slots_in_use:
            return jsonify({
                'success': False,
                'message': f'Cannot set fewer workers than the {slots_in_use} already applied or assigned'
            }), 400

        job.workers_needed = new_count
        job.updated_at = datetime.utcnow()
        db.session.commit()

        return jsonify({'success': True, 'message': 'Worker count updated', 'job': job.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update worker count error: {str(e)}")
        return jsonify({'success': False, 'message': 'Failed to update worker count'}), 500

@app.route('/api/jobs/<int:job_id>', methods=['GET'])
def get_job(job_id):
    try:
        job = db.session.get(Microjob, job_id)
        if not job:
            return jsonify({'error': 'Job not found'}), 404

        user = current_user()
        is_owner = bool(user and user.id == job.employer_id)
        if job.status not in Microjob.LISTED_STATUSES and job.status != 'completed' and not is_owner \
                and not (user and user.is_admin):
            return jsonify({'error': 'Job not found'}), 404

        if not is_owner:
            job.views = (job.views or 0) + 1
            db.session.commit()

        data = job.to_dict()
        if user:
            data['is_favorite'] = Favorite.query.filter_by(user_id=user.id, job_id=job.id).first() is not None
            application = Application.query.filter_by(job_id=job.id, applicant_id=user.id).first()
            data['my_application'] = application.to_dict() if application else None
        return jsonify(data), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Get job error: {str(e)}")
        return jsonify({'error': 'Failed to get job'}), 500

@app.route('/api/my-jobs', methods=['GET'])
@login_required
def get_my_jobs():
    """Jobs posted by the current user, with review workload counts"""
    try:
        user_id = session['user_id']
        status = request.args.get('status')

        query = Microjob.query.filter_by(employer_id=user_id)
        if status:
            query = query.filter_by(status=status)
        jobs = query.order_by(Microjob.created_at.desc()).all()

        result = []
        for job in jobs:
            data = job.to_dict()
            data['pending_applications'] = Application.query.filter_by(job_id=job.id, status='pending').count()
            data['proofs_awaiting_review'] = WorkProof.query.filter_by(job_id=job.id, status='submitted').count()
            result.append(data)

        return jsonify({'jobs': result}), 200
    except Exception as e:
        app.logger.error(f"Get my jobs error: {str(e)}")
        return jsonify({'error': 'Failed to get your jobs'}), 500

@app.route('/api/jobs/<int:job_id>/status', methods=['POST'])
@login_required
def change_job_status(job_id):
    """Employer pause, resume or cancel"""
    job = db.session.get(Microjob, job_id)
    if not job:
        return jsonify({'error': 'Job not found'}), 404

    if job.employer_id != session['user_id']:
        return jsonify({'error': 'Only the job owner can change its status'}), 403

    data = request.get_json(silent=True) or {}
    action = data.get('action')

    try:
        if action == 'pause':
            if job.status not in Microjob.LISTED_STATUSES:
                return jsonify({'error': f'Cannot pause a {job.status} job'}), 400
            job.status = 'paused'
        elif action == 'resume':
            if job.status != 'paused':
                return jsonify({'error': 'Only paused jobs can be resumed'}), 400
            job.status = 'open'
        elif action == 'cancel':
            if job.status in ('completed', 'cancelled'):
                return jsonify({'error': f'Job is already {job.status}'}), 400
            held = Escrow.query.filter(
                Escrow.job_id == job.id,
                Escrow.status.in_(['funded', 'disputed'])
            ).count()
            if held:
                return jsonify({'error': 'Cannot cancel a job while workers have funds in escrow'}), 400

            pending = Application.query.filter_by(job_id=job.id, status='pending').all()
            for application in pending:
                application.status = 'rejected'
                notify(application.applicant_id, 'application', 'Job Cancelled',
                       f'The job "{job.title}" was cancelled by the employer.', f'/jobs/{job.id}', job.id)
            job.applications_count = max(0, (job.applications_count or 0) - len(pending))
            job.status = 'cancelled'
        else:
            return jsonify({'error': 'Invalid action'}), 400

        job.updated_at = datetime.utcnow()
        db.session.commit()
        return jsonify({'message': f'Job {job.status}', 'job': job.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Change job status error: {str(e)}")
        return jsonify({'error': 'Failed to change job status'}), 500

@app.route('/api/dashboard/jobs', methods=['GET'])
@login_required
def get_dashboard_jobs():
    """Open jobs the user can still apply to"""
    try:
        user_id = session['user_id']
        limit = min(max(parse_int(request.args.get('limit'), 20), 1), 100)

        applied_job_ids = db.select(Application.job_id).where(Application.applicant_id == user_id)

        jobs = Microjob.query.filter(
            Microjob.status.in_(Microjob.LISTED_STATUSES),
            Microjob.employer_id != user_id,
            ~Microjob.id.in_(applied_job_ids),
            Microjob.applications_count < Microjob.workers_needed
        ).order_by(Microjob.created_at.desc()).limit(limit).all()

        return jsonify({'jobs': [job.to_dict() for job in jobs]}), 200
    except Exception as e:
        app.logger.error(f"Dashboard jobs error: {str(e)}")
        return jsonify({'error': 'Failed to load available jobs'}), 500

@app.route('/api/dashboard/stats', methods=['GET'])
@login_required
def get_dashboard_stats():
    try:
        user_id = session['user_id']
        user = db.session.get(User, user_id)
        wallet = get_or_create_wallet(user_id)

        applications = Application.query.filter_by(applicant_id=user_id)
        total_applications = applications.count()
        completed = applications.filter_by(status='completed').count()
        finished = applications.filter(Application.status.in_(['completed', 'cancelled'])).count()

        pending_earnings = db.session.query(func.coalesce(func.sum(Escrow.amount), 0)).filter(
            Escrow.worker_id == user_id,
            Escrow.status.in_(['funded', 'disputed'])
        ).scalar()

        posted = Microjob.query.filter_by(employer_id=user_id)

        stats = {
            'total_applications': total_applications,
            'pending_applications': applications.filter_by(status='pending').count(),
            'active_jobs': applications.filter_by(status='accepted').count(),
            'completed_jobs': completed,
            'success_rate': round(completed / finished * 100, 1) if finished else 0,
            'posted_jobs': posted.count(),
            'open_posted_jobs': posted.filter(Microjob.status.in_(Microjob.LISTED_STATUSES)).count(),
            'proofs_awaiting_review': WorkProof.query.filter_by(employer_id=user_id, status='submitted').count(),
            'pending_earnings': round(float(pending_earnings or 0), 2),
            'rating': round(user.rating or 0, 2),
            'review_count': user.review_count or 0,
            'wallet': wallet.to_dict()
        }
        db.session.commit()
        return jsonify(stats), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Dashboard stats error: {str(e)}")
        return jsonify({'error': 'Failed to load dashboard stats'}), 500

@app.route('/api/favorites', methods=['GET'])
@login_required
def get_favorites():
    try:
        favorites = db.session.query(Favorite, Microjob).join(
            Microjob, Favorite.job_id == Microjob.id
        ).filter(Favorite.user_id == session['user_id']).order_by(Favorite.created_at.desc()).all()

        result = []
        for favorite, job in favorites:
            item = job.to_dict()
            item['favoriteId'] = favorite.id
            item['favoritedAt'] = iso(favorite.created_at)
            item['users'] = job.employer.public_dict() if job.employer else None
            item['categories'] = job.category.to_dict() if job.category else None
            result.append(item)

        return jsonify(result), 200
    except Exception as e:
        app.logger.error(f"Get favorites error: {str(e)}")
        return jsonify({'error': 'Failed to fetch favorites'}), 500

@app.route('/api/favorites', methods=['POST'])
@login_required
def add_favorite():
    data = request.get_json(silent=True) or {}
    job_id = parse_int(data.get('jobId'))
    if not job_id:
        return jsonify({'error': 'Job ID is required'}), 400

    try:
        if not db.session.get(Microjob, job_id):
            return jsonify({'error': 'Job not found'}), 404

        user_id = session['user_id']
        if Favorite.query.filter_by(user_id=user_id, job_id=job_id).first():
            return jsonify({'error': 'Job already in favorites'}), 409

        favorite = Favorite(user_id=user_id, job_id=job_id)
        db.session.add(favorite)
        db.session.commit()
        return jsonify({'success': True, 'favoriteId': favorite.id}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Add favorite error: {str(e)}")
        return jsonify({'error': 'Failed to add favorite'}), 500

@app.route('/api/favorites', methods=['DELETE'])
@login_required
def remove_favorite():
    data = request.get_json(silent=True) or {}
    job_id = parse_int(data.get('jobId', request.args.get('jobId')))
    if not job_id:
        return jsonify({'error': 'Job ID is required'}), 400

    try:
        Favorite.query.filter_by(user_id=session['user_id'], job_id=job_id).delete()
        db.session.commit()
        return jsonify({'success': True}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Remove favorite error: {str(e)}")
        return jsonify({'error': 'Failed to remove favorite'}), 500

@app.route('/api/jobs/<int:job_id>/apply', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=20)
def apply_to_job(job_id):
    job = db.session.get(Microjob, job_id)
    if not job:
        return jsonify({'error': 'Job not found'}), 404

    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}

        if job.status not in Microjob.LISTED_STATUSES:
            return jsonify({'error': 'This job is not accepting applications'}), 400

        if job.employer_id == user_id:
            return jsonify({'error': 'You cannot apply to your own job'}), 400

        if Application.query.filter_by(job_id=job_id, applicant_id=user_id).first():
            return jsonify({'error': 'You have already applied to this job'}), 409

        if job.applications_count >= job.workers_needed:
            return jsonify({'error': 'This job has no open slots'}), 400

        proposed_budget = parse_amount(data.get('proposed_budget', job.budget_max))
        if proposed_budget is None or proposed_budget < job.budget_min or proposed_budget > job.budget_max:
            return jsonify({
                'error': f'Proposed budget must be between {job.budget_min:.2f} and {job.budget_max:.2f}'
            }), 400

        portfolio_links = parse_links(data.get('portfolio_links'))
        if portfolio_links is None:
            return jsonify({'error': 'Portfolio links must start with http:// or https://'}), 400

        application = Application(
            job_id=job_id,
            applicant_id=user_id,
            cover_letter=sanitize_input(data.get('cover_letter', ''), max_length=5000),
            proposed_budget=proposed_budget,
            estimated_duration=sanitize_input(data.get('estimated_duration', ''), max_length=50),
            portfolio_links=json.dumps(portfolio_links) if portfolio_links else None,
            status='pending'
        )
        db.session.add(application)
        job.applications_count = (job.applications_count or 0) + 1
        touch_user_activity(db.session.get(User, user_id))
        db.session.flush()

        notify(job.employer_id, 'application', 'New Application',
               f'You received a new application for "{job.title}".', f'/jobs/{job.id}', application.id)
        db.session.commit()

        return jsonify({'message': 'Application submitted successfully', 'application': application.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Apply to job error: {str(e)}")
        return jsonify({'error': 'Failed to submit application'}), 500

@app.route('/api/jobs/<int:job_id>/applications', methods=['GET'])
@login_required
def get_job_applications(job_id):
    job = db.session.get(Microjob, job_id)
    if not job:
        return jsonify({'error': 'Job not found'}), 404

    if job.employer_id != session['user_id']:
        return jsonify({'error': 'Only the job owner can view applications'}), 403

    try:
        applications = Application.query.filter_by(job_id=job_id).order_by(Application.created_at.desc()).all()
        result = []
        for application in applications:
            data = application.to_dict()
            proof = latest_work_proof(application.id)
            escrow = Escrow.query.filter_by(application_id=application.id).first()
            data['work_proof'] = proof.to_dict() if proof else None
            data['escrow'] = escrow.to_dict() if escrow else None
            result.append(data)
        return jsonify({'applications': result}), 200
    except Exception as e:
        app.logger.error(f"Get job applications error: {str(e)}")
        return jsonify({'error': 'Failed to get applications'}), 500

@app.route('/api/applications/<int:application_id>/accept', methods=['POST'])
@login_required
def accept_application(application_id):
    """Accept an application and hold its payment in escrow"""
    application = db.session.get(Application, application_id)
    if not application:
        return jsonify({'error': 'Application not found'}), 404

    job = db.session.get(Microjob, application.job_id)
    if job.employer_id != session['user_id']:
        return jsonify({'error': 'Only the job owner can accept applications'}), 403

    if application.status != 'pending':
        return jsonify({'error': f'Application cannot be accepted (status: {application.status})'}), 400

    if job.status not in Microjob.LISTED_STATUSES and job.status != 'paused':
        return jsonify({'error': f'Cannot accept applications on a {job.status} job'}), 400

    try:
        amount = application.proposed_budget or job.budget_max
        escrow, error = fund_escrow(application, job, amount)
        if error:
            db.session.rollback()
            return jsonify({'error': error}), 400

        application.status = 'accepted'
        notify(application.applicant_id, 'application', 'Application Accepted',
               f'You were hired for "{job.title}". Submit your work proof when done.',
               '/applied-jobs', application.id)
        db.session.commit()

        security_logger.log_financial('escrow_funded', f'Escrow funded for application {application.id}',
                                      amount, 'escrow', escrow.id)

        return jsonify({
            'message': 'Application accepted. Payment is held in escrow.',
            'application': application.to_dict(),
            'escrow': escrow.to_dict()
        }), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Accept application error: {str(e)}")
        return jsonify({'error': 'Failed to accept application'}), 500

@app.route('/api/applications/<int:application_id>/reject', methods=['POST'])
@login_required
def reject_application(application_id):
    application = db.session.get(Application, application_id)
    if not application:
        return jsonify({'error': 'Application not found'}), 404

    job = db.session.get(Microjob, application.job_id)
    if job.employer_id != session['user_id']:
        return jsonify({'error': 'Only the job owner can reject applications'}), 403

    if application.status != 'pending':
        return jsonify({'error': f'Application cannot be rejected (status: {application.status})'}), 400

    try:
        application.status = 'rejected'
        job.applications_count = max(0, (job.applications_count or 0) - 1)
        notify(application.applicant_id, 'application', 'Application Not Selected',
               f'Your application for "{job.title}" was not selected.', f'/jobs/{job.id}', application.id)
        db.session.commit()
        return jsonify({'message': 'Application rejected', 'application': application.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Reject application error: {str(e)}")
        return jsonify({'error': 'Failed to reject application'}), 500

@app.route('/api/applications/mine', methods=['GET'])
@login_required
def get_applied_jobs():
    """
    The worker's applications with work proof state, countdowns and
    available actions, sorted by what needs attention first.
    """
    try:
        user_id = session['user_id']
        status_filter = request.args.get('status', 'all')
        search = sanitize_input(request.args.get('search', ''), max_length=200).lower() if request.args.get('search') else ''
        page = max(parse_int(request.args.get('page'), 1), 1)
        per_page = min(max(parse_int(request.args.get('per_page'), 5), 1), 50)
        now = datetime.utcnow()

        applications = Application.query.filter_by(applicant_id=user_id).all()

        items = []
        status_counts = {}
        for application in applications:
            job = application.job
            proof = latest_work_proof(application.id)
            status = display_status(application, proof)

            if search and search not in job.title.lower() and search not in (job.description or '').lower():
                continue

            status_counts[status] = status_counts.get(status, 0) + 1
            if status_filter != 'all' and status != status_filter:
                continue

            deadline = None
            countdown = None
            actions = []
            dispute = None
            if proof:
                if proof.status == 'rejected':
                    deadline = proof.rejection_deadline
                elif proof.status == 'revision_requested':
                    deadline = proof.revision_deadline
                if deadline or proof.status in ('cancelled_by_worker', 'rejected_accepted'):
                    countdown = format_countdown(deadline, proof.status, now)

                expired = bool(countdown and countdown['expired'])
                if proof.status == 'rejected' and not expired:
                    actions = ['accept_rejection', 'dispute', 'cancel']
                elif proof.status == 'revision_requested' and not expired:
                    actions = ['resubmit', 'cancel']

                open_dispute = Dispute.query.filter(
                    Dispute.work_proof_id == proof.id,
                    Dispute.status.in_(Dispute.OPEN_STATUSES)
                ).first()
                dispute = open_dispute.to_dict() if open_dispute else None
            elif application.status == 'accepted':
                actions = ['submit']

            items.append({
                'application': application.to_dict(),
                'job': job.to_dict(),
                'work_proof': proof.to_dict() if proof else None,
                'display_status': status,
                'priority': DISPLAY_PRIORITY.get(status, 9),
                'deadline': iso(deadline),
                'countdown': countdown,
                'actions': actions,
                'dispute': dispute,
                '_sort_time': application.updated_at or application.created_at
            })

        items.sort(key=lambda item: item['_sort_time'], reverse=True)
        items.sort(key=lambda item: item['priority'])
        for item in items:
            del item['_sort_time']

        total = len(items)
        total_pages = math.ceil(total / per_page) if total else 0
        start = (page - 1) * per_page

        return jsonify({
            'applications': items[start:start + per_page],
            'status_counts': status_counts,
            'pagination': {
                'page': page,
                'per_page': per_page,
                'total': total,
                'totalPages': total_pages
            }
        }), 200
    except Exception as e:
        app.logger.error(f"Get applied jobs error: {str(e)}")
        return jsonify({'error': 'Failed to load applied jobs'}), 500

@app.route('/api/applications/<int:application_id>/work-proofs', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def submit_work_proof(application_id):
    """Submit work proof (JSON, or multipart with screenshots)"""
    application = db.session.get(Application, application_id)
    if not application:
        return jsonify({'error': 'Application not found'}), 404

    if application.applicant_id != session['user_id']:
        return jsonify({'error': 'Only the hired worker can submit work proof'}), 403

    if application.status != 'accepted':
        return jsonify({'error': 'Work proof can only be submitted for accepted applications'}), 400

    existing = latest_work_proof(application.id)
    if existing and existing.status in WorkProof.OPEN_STATUSES:
        return jsonify({'error': f'A work proof is already {existing.status.replace("_", " ")}'}), 400

    screenshots = []
    try:
        data = request.form if request.files or request.form else (request.get_json(silent=True) or {})

        description = sanitize_input(data.get('description', ''), max_length=5000)
        if not description:
            return jsonify({'error': 'Description is required'}), 400

        proof_links = parse_links(data.get('proof_links'))
        if proof_links is None:
            return jsonify({'error': 'Proof links must start with http:// or https://'}), 400

        screenshots, error = save_screenshots(request.files.getlist('screenshots'))
        if error:
            return jsonify({'error': error}), 400

        if not proof_links and not screenshots:
            return jsonify({'error': 'Provide at least one proof link or screenshot'}), 400

        job = db.session.get(Microjob, application.job_id)
        proof = WorkProof(
            job_id=job.id,
            application_id=application.id,
            worker_id=application.applicant_id,
            employer_id=job.employer_id,
            description=description,
            proof_links=json.dumps(proof_links),
            screenshots=json.dumps(screenshots),
            additional_notes=sanitize_input(data.get('additional_notes', ''), max_length=2000),
            status='submitted',
            revision_count=0,
            submitted_at=datetime.utcnow()
        )
        db.session.add(proof)
        touch_user_activity(db.session.get(User, application.applicant_id))
        db.session.flush()

        notify(job.employer_id, 'work_proof', 'Work Submitted',
               f'New work proof submitted for "{job.title}".', f'/jobs/{job.id}', proof.id)
        db.session.commit()

        return jsonify({'message': 'Work proof submitted', 'work_proof': proof.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        remove_screenshots(screenshots)
        app.logger.error(f"Submit work proof error: {str(e)}")
        return jsonify({'error': 'Failed to submit work proof'}), 500

@app.route('/api/jobs/<int:job_id>/work-proofs', methods=['GET'])
@login_required
def get_job_work_proofs(job_id):
    job = db.session.get(Microjob, job_id)
    if not job:
        return jsonify({'error': 'Job not found'}), 404

    user_id = session['user_id']
    query = WorkProof.query.filter_by(job_id=job_id)
    if job.employer_id != user_id:
        query = query.filter_by(worker_id=user_id)

    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)

    proofs = query.order_by(WorkProof.created_at.desc()).all()
    return jsonify({'work_proofs': [p.to_dict() for p in proofs]}), 200

@app.route('/api/work-proofs/<int:proof_id>', methods=['GET'])
@login_required
def get_work_proof(proof_id):
    proof = db.session.get(WorkProof, proof_id)
    if not proof:
        return jsonify({'error': 'Work proof not found'}), 404

    user = db.session.get(User, session['user_id'])
    if user.id not in (proof.worker_id, proof.employer_id) and not user.is_admin:
        return jsonify({'error': 'Access denied'}), 403

    data = proof.to_dict()
    deadline = proof.rejection_deadline if proof.status == 'rejected' else proof.revision_deadline
    data['countdown'] = format_countdown(deadline, proof.status)
    return jsonify(data), 200

@app.route('/api/work-proofs/<int:proof_id>/approve', methods=['POST'])
@login_required
def approve_work_proof_route(proof_id):
    proof = db.session.get(WorkProof, proof_id)
    if not proof:
        return jsonify({'error': 'Work proof not found'}), 404

    if proof.employer_id != session['user_id']:
        return jsonify({'error': 'Only the employer can approve work'}), 403

    if proof.status != 'submitted':
        return jsonify({'error': f'Work proof cannot be approved (status: {proof.status})'}), 400

    try:
        escrow = approve_work_proof(proof)
        db.session.commit()

        if escrow:
            security_logger.log_financial('escrow_released', f'Escrow released for work proof {proof.id}',
                                          escrow.amount, 'escrow', escrow.id)

        return jsonify({
            'message': 'Work approved and payment released',
            'work_proof': proof.to_dict(),
            'escrow': escrow.to_dict() if escrow else None
        }), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Approve work proof error: {str(e)}")
        return jsonify({'error': 'Failed to approve work'}), 500

@app.route('/api/work-proofs/<int:proof_id>/reject', methods=['POST'])
@login_required
def reject_work_proof(proof_id):
    proof = db.session.get(WorkProof, proof_id)
    if not proof:
        return jsonify({'error': 'Work proof not found'}), 404

    if proof.employer_id != session['user_id']:
        return jsonify({'error': 'Only the employer can reject work'}), 403

    if proof.status != 'submitted':
        return jsonify({'error': f'Work proof cannot be rejected (status: {proof.status})'}), 400

    data = request.get_json(silent=True) or {}
    reason = sanitize_input(data.get('reason', ''), max_length=2000)
    if not reason:
        return jsonify({'error': 'A rejection reason is required'}), 400

    try:
        settings = get_revision_settings()
        now = datetime.utcnow()

        proof.status = 'rejected'
        proof.rejection_reason = reason
        proof.reviewed_at = now
        proof.rejection_deadline = now + timeout_delta(
            settings['rejection_response_timeout'], settings['rejection_response_timeout_unit']
        )

        job = db.session.get(Microjob, proof.job_id)
        notify(proof.worker_id, 'work_proof', 'Work Rejected',
               f'Your work for "{job.title}" was rejected. Accept or dispute before the deadline.',
               '/applied-jobs', proof.id)
        db.session.commit()

        return jsonify({'message': 'Work proof rejected', 'work_proof': proof.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Reject work proof error: {str(e)}")
        return jsonify({'error': 'Failed to reject work'}), 500

@app.route('/api/work-proofs/<int:proof_id>/request-revision', methods=['POST'])
@login_required
def request_work_revision(proof_id):
    proof = db.session.get(WorkProof, proof_id)
    if not proof:
        return jsonify({'error': 'Work proof not found'}), 404

    if proof.employer_id != session['user_id']:
        return jsonify({'error': 'Only the employer can request revisions'}), 403

    if proof.status != 'submitted':
        return jsonify({'error': f'Revision cannot be requested (status: {proof.status})'}), 400

    settings = get_revision_settings()
    if (proof.revision_count or 0) >= int(settings['max_revision_requests']):
        return jsonify({'error': 'Maximum revision requests reached'}), 400

    data = request.get_json(silent=True) or {}
    notes = sanitize_input(data.get('notes', ''), max_length=2000)
    if not notes:
        return jsonify({'error': 'Revision notes are required'}), 400

    try:
        now = datetime.utcnow()
        proof.status = 'revision_requested'
        proof.revision_notes = notes
        proof.revision_count = (proof.revision_count or 0) + 1
        proof.reviewed_at = now
        proof.revision_deadline = now + timeout_delta(
            settings['revision_request_timeout'], settings['revision_request_timeout_unit']
        )

        job = db.session.get(Microjob, proof.job_id)
        notify(proof.worker_id, 'work_proof', 'Revision Requested',
               f'The employer requested changes to your work for "{job.title}".',
               '/applied-jobs', proof.id)
        db.session.commit()

        return jsonify({'message': 'Revision requested', 'work_proof': proof.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Request revision error: {str(e)}")
        return jsonify({'error': 'Failed to request revision'}), 500

@app.route('/api/work-proofs/<int:proof_id>/resubmit', methods=['POST'])
@login_required
def resubmit_work_proof(proof_id):
    proof = db.session.get(WorkProof, proof_id)
    if not proof:
        return jsonify({'error': 'Work proof not found'}), 404

    if proof.worker_id != session['user_id']:
        return jsonify({'error': 'Only the worker can resubmit work'}), 403

    if proof.status != 'revision_requested':
        return jsonify({'error': f'Work cannot be resubmitted (status: {proof.status})'}), 400

    if proof.revision_deadline and proof.revision_deadline <= datetime.utcnow():
        return jsonify({'error': 'The revision deadline has passed'}), 400

    screenshots = []
    try:
        data = request.form if request.files or request.form else (request.get_json(silent=True) or {})

        description = sanitize_input(data.get('description', ''), max_length=5000)
        if not description:
            return jsonify({'error': 'Description is required'}), 400

        proof_links = parse_links(data.get('proofLinks', data.get('proof_links')))
        if proof_links is None:
            return jsonify({'error': 'Proof links must start with http:// or https://'}), 400

        screenshots, error = save_screenshots(request.files.getlist('screenshots'))
        if error:
            return jsonify({'error': error}), 400

        proof.description = description
        if proof_links:
            proof.proof_links = json.dumps(proof_links)
        if screenshots:
            proof.screenshots = json.dumps(screenshots)
        proof.additional_notes = sanitize_input(
            data.get('additionalNotes', data.get('additional_notes', '')), max_length=2000
        )
        proof.status = 'submitted'
        proof.submitted_at = datetime.utcnow()
        proof.revision_deadline = None

        job = db.session.get(Microjob, proof.job_id)
        notify(proof.employer_id, 'work_proof', 'Work Resubmitted',
               f'Revised work was submitted for "{job.title}".', f'/jobs/{job.id}', proof.id)
        db.session.commit()

        return jsonify({'message': 'Work resubmitted', 'work_proof': proof.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        remove_screenshots(screenshots)
        app.logger.error(f"Resubmit work proof error: {str(e)}")
        return jsonify({'error': 'Failed to resubmit work'}), 500

@app.route('/api/work-proofs/<int:proof_id>/accept-rejection', methods=['POST'])
@login_required
def accept_work_rejection(proof_id):
    proof = db.session.get(WorkProof, proof_id)
    if not proof:
        return jsonify({'error': 'Work proof not found'}), 404

    if proof.worker_id != session['user_id']:
        return jsonify({'error': 'Only the worker can accept a rejection'}), 403

    if proof.status != 'rejected':
        return jsonify({'error': f'Rejection cannot be accepted (status: {proof.status})'}), 400

    try:
        escrow = refund_work_proof(proof, 'rejected_accepted', 'rejection accepted by worker')
        db.session.commit()

        if escrow:
            security_logger.log_financial('escrow_refunded', f'Rejection accepted for work proof {proof.id}',
                                          escrow.amount, 'escrow', escrow.id)

        return jsonify({'message': 'Rejection accepted. The employer has been refunded.',
                        'work_proof': proof.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Accept rejection error: {str(e)}")
        return jsonify({'error': 'Failed to accept rejection'}), 500

@app.route('/api/work-proofs/<int:proof_id>/cancel', methods=['POST'])
@login_required
def cancel_work_assignment(proof_id):
    """Worker gives up the job; the employer is refunded in full"""
    proof = db.session.get(WorkProof, proof_id)
    if not proof:
        return jsonify({'error': 'Work proof not found'}), 404

    if proof.worker_id != session['user_id']:
        return jsonify({'error': 'Only the worker can cancel this job'}), 403

    if proof.status not in ('revision_requested', 'rejected'):
        return jsonify({'error': f'Job cannot be cancelled (status: {proof.status})'}), 400

    try:
        escrow = refund_work_proof(proof, 'cancelled_by_worker', 'cancelled by worker')
        db.session.commit()

        if escrow:
            security_logger.log_financial('escrow_refunded', f'Worker cancelled work proof {proof.id}',
                                          escrow.amount, 'escrow', escrow.id)

        return jsonify({'message': 'Job cancelled. The employer has been refunded.',
                        'work_proof': proof.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Cancel job error: {str(e)}")
        return jsonify({'error': 'Failed to cancel job'}), 500

@app.route('/api/work-proofs/<int:proof_id>/dispute', methods=['POST'])
@login_required
def dispute_work_rejection(proof_id):
    proof = db.session.get(WorkProof, proof_id)
    if not proof:
        return jsonify({'error': 'Work proof not found'}), 404

    if proof.worker_id != session['user_id']:
        return jsonify({'error': 'Only the worker can dispute a rejection'}), 403

    open_dispute = Dispute.query.filter(
        Dispute.work_proof_id == proof.id,
        Dispute.status.in_(Dispute.OPEN_STATUSES)
    ).first()
    if open_dispute:
        return jsonify({
            'error': 'A dispute for this work proof already exists and is pending resolution',
            'dispute': open_dispute.to_dict()
        }), 409

    if proof.status != 'rejected':
        return jsonify({'error': f'Only rejected work can be disputed (status: {proof.status})'}), 400

    if proof.rejection_deadline and proof.rejection_deadline <= datetime.utcnow():
        return jsonify({'error': 'The rejection response deadline has passed'}), 400

    data = request.get_json(silent=True) or {}
    reason = sanitize_input(data.get('reason', ''), max_length=5000)
    if not reason:
        return jsonify({'error': 'A reason is required'}), 400

    requested_action = data.get('requestedAction', data.get('requested_action', 'payment'))
    if requested_action not in ('payment', 'resubmission'):
        return jsonify({'error': 'Invalid requested action'}), 400

    try:
        dispute = Dispute(
            dispute_number=generate_reference_number('DIS'),
            work_proof_id=proof.id,
            job_id=proof.job_id,
            application_id=proof.application_id,
            worker_id=proof.worker_id,
            employer_id=proof.employer_id,
            reason=reason,
            requested_action=requested_action,
            status='pending'
        )
        db.session.add(dispute)

        proof.status = 'disputed'
        proof.rejection_deadline = None

        escrow = Escrow.query.filter_by(application_id=proof.application_id).first()
        if escrow and escrow.status == 'funded':
            escrow.status = 'disputed'

        db.session.flush()
        job = db.session.get(Microjob, proof.job_id)
        notify(proof.employer_id, 'dispute', 'Dispute Filed',
               f'The worker disputed your rejection for "{job.title}".', f'/disputes/{dispute.id}', dispute.id)
        db.session.commit()

        return jsonify({'message': 'Dispute filed', 'dispute': dispute.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"File dispute error: {str(e)}")
        return jsonify({'error': 'Failed to file dispute'}), 500

@app.route('/uploads/work_proofs/<path:filename>')
@login_required
def serve_work_proof_file(filename):
    """Screenshots are visible to the worker, the employer and admins"""
    filename = secure_filename(filename)
    proof = WorkProof.query.filter(WorkProof.screenshots.like(f'%"{filename}"%')).first()
    if not proof:
        return jsonify({'error': 'File not found'}), 404

    user = db.session.get(User, session['user_id'])
    if user.id not in (proof.worker_id, proof.employer_id) and not user.is_admin:
        security_logger.log_authorization('work_proof', proof.id, 'Screenshot access', 'blocked')
        return jsonify({'error': 'Access denied'}), 403

    return send_from_directory(os.path.join(app.config['UPLOAD_FOLDER'], 'work_proofs'), filename)

@app.route('/api/settings/revision', methods=['GET'])
@login_required
def get_revision_settings_route():
    return jsonify(get_revision_settings()), 200

@app.route('/api/admin/settings/revision', methods=['PUT'])
@admin_required
def update_revision_settings():
    data = request.get_json(silent=True) or {}
    settings, error = validate_revision_settings(data)
    if error:
        return jsonify({'error': error}), 400

    try:
        set_site_setting('revision_settings', json.dumps(settings),
                         'Work proof revision and rejection timeouts', session['user_id'])
        security_logger.log_admin_action('Updated revision settings', 'site_settings', 'revision_settings',
                                         details=settings)
        return jsonify({'message': 'Revision settings updated', 'settings': settings}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update revision settings error: {str(e)}")
        return jsonify({'error': 'Failed to update revision settings'}), 500

@app.route('/api/admin/work-proofs/process-timeouts', methods=['POST'])
@admin_required
def process_work_proof_timeouts():
    """Run the deadline sweep now instead of waiting for the scheduler"""
    try:
        summary = sweep_expired_work_proofs()
        security_logger.log_admin_action('Processed work proof timeouts', 'work_proof', None, details=summary)
        return jsonify({'message': 'Timeouts processed', 'summary': summary}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Process timeouts error: {str(e)}")
        return jsonify({'error': 'Failed to process timeouts'}), 500

@app.route('/api/disputes', methods=['GET'])
@login_required
def get_my_disputes():
    user_id = session['user_id']
    disputes = Dispute.query.filter(
        or_(Dispute.worker_id == user_id, Dispute.employer_id == user_id)
    ).order_by(Dispute.created_at.desc()).all()
    return jsonify({'disputes': [d.to_dict() for d in disputes]}), 200

@app.route('/api/disputes/<int:dispute_id>', methods=['GET'])
@login_required
def get_dispute(dispute_id):
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return jsonify({'error': 'Dispute not found'}), 404

    user = db.session.get(User, session['user_id'])
    if user.id not in (dispute.worker_id, dispute.employer_id) and not user.is_admin:
        return jsonify({'error': 'Access denied'}), 403

    messages = DisputeMessage.query.filter_by(dispute_id=dispute.id).order_by(DisputeMessage.created_at.asc()).all()
    data = dispute.to_dict()
    data['messages'] = [m.to_dict() for m in messages]
    proof = db.session.get(WorkProof, dispute.work_proof_id)
    data['work_proof'] = proof.to_dict() if proof else None
    return jsonify(data), 200

@app.route('/api/disputes/<int:dispute_id>/messages', methods=['POST'])
@login_required
def add_dispute_message(dispute_id):
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return jsonify({'error': 'Dispute not found'}), 404

    user = db.session.get(User, session['user_id'])
    if user.id not in (dispute.worker_id, dispute.employer_id) and not user.is_admin:
        return jsonify({'error': 'Access denied'}), 403

    if dispute.status == 'resolved':
        return jsonify({'error': 'This dispute has been resolved'}), 400

    data = request.get_json(silent=True) or {}
    message = sanitize_input(data.get('message', ''), max_length=5000)
    if not message:
        return jsonify({'error': 'Message is required'}), 400

    try:
        dispute_message = DisputeMessage(
            dispute_id=dispute.id,
            sender_id=user.id,
            message=message,
            is_admin=bool(user.is_admin)
        )
        db.session.add(dispute_message)

        for recipient in (dispute.worker_id, dispute.employer_id):
            if recipient != user.id:
                notify(recipient, 'dispute', 'New Dispute Message',
                       f'New message on dispute {dispute.dispute_number}.', f'/disputes/{dispute.id}', dispute.id)
        db.session.commit()
        return jsonify({'message': 'Message sent', 'dispute_message': dispute_message.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Dispute message error: {str(e)}")
        return jsonify({'error': 'Failed to send message'}), 500

@app.route('/api/admin/disputes', methods=['GET'])
@admin_required
def admin_get_disputes():
    status = request.args.get('status')
    query = Dispute.query
    if status and status != 'all':
        query = query.filter_by(status=status)
    disputes = query.order_by(Dispute.created_at.desc()).all()
    return jsonify({'disputes': [d.to_dict() for d in disputes]}), 200

@app.route('/api/admin/disputes/<int:dispute_id>/review', methods=['POST'])
@admin_required
def admin_review_dispute(dispute_id):
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return jsonify({'error': 'Dispute not found'}), 404

    if dispute.status != 'pending':
        return jsonify({'error': f'Dispute cannot be moved to review (status: {dispute.status})'}), 400

    try:
        dispute.status = 'under_review'
        db.session.commit()
        return jsonify({'message': 'Dispute under review', 'dispute': dispute.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Review dispute error: {str(e)}")
        return jsonify({'error': 'Failed to update dispute'}), 500

@app.route('/api/admin/disputes/<int:dispute_id>/resolve', methods=['POST'])
@admin_required
def admin_resolve_dispute(dispute_id):
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return jsonify({'error': 'Dispute not found'}), 404

    if dispute.status not in Dispute.OPEN_STATUSES:
        return jsonify({'error': 'Dispute is already resolved'}), 400

    data = request.get_json(silent=True) or {}
    resolution_type = data.get('resolution_type')
    resolution = sanitize_input(data.get('resolution', ''), max_length=5000)

    if resolution_type not in ('release_payment', 'refund_employer', 'allow_resubmission'):
        return jsonify({'error': 'Invalid resolution type'}), 400
    if not resolution:
        return jsonify({'error': 'Resolution notes are required'}), 400

    proof = db.session.get(WorkProof, dispute.work_proof_id)
    if proof.status != 'disputed':
        return jsonify({'error': f'Work proof is no longer disputed (status: {proof.status})'}), 400

    try:
        now = datetime.utcnow()
        escrow = None
        if resolution_type == 'release_payment':
            escrow = approve_work_proof(proof, now)
        elif resolution_type == 'refund_employer':
            escrow = refund_work_proof(proof, 'rejected_accepted', 'dispute resolved for employer', now)
        else:
            settings = get_revision_settings()
            proof.status = 'revision_requested'
            proof.revision_notes = resolution
            proof.revision_deadline = now + timeout_delta(
                settings['revision_request_timeout'], settings['revision_request_timeout_unit']
            )
            held = Escrow.query.filter_by(application_id=proof.application_id).first()
            if held and held.status == 'disputed':
                held.status = 'funded'

        dispute.status = 'resolved'
        dispute.resolution = resolution
        dispute.resolution_type = resolution_type
        dispute.resolved_by = session['user_id']
        dispute.resolved_at = now

        for recipient in (dispute.worker_id, dispute.employer_id):
            notify(recipient, 'dispute', 'Dispute Resolved',
                   f'Dispute {dispute.dispute_number} was resolved: {resolution_type.replace("_", " ")}.',
                   f'/disputes/{dispute.id}', dispute.id)
        db.session.commit()

        security_logger.log_admin_action(
            f'Resolved dispute {dispute.dispute_number}', 'dispute', dispute.id,
            details={'resolution_type': resolution_type, 'amount': escrow.amount if escrow else None}
        )

        return jsonify({'message': 'Dispute resolved', 'dispute': dispute.to_dict(),
                        'work_proof': proof.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Resolve dispute error: {str(e)}")
        return jsonify({'error': 'Failed to resolve dispute'}), 500

@app.route('/api/wallet', methods=['GET'])
@login_required
def get_wallet():
    try:
        user_id = session['user_id']
        wallet = get_or_create_wallet(user_id)

        incoming = Escrow.query.filter(
            Escrow.worker_id == user_id,
            Escrow.status.in_(['funded', 'disputed'])
        ).order_by(Escrow.funded_at.desc()).all()
        outgoing = Escrow.query.filter(
            Escrow.employer_id == user_id,
            Escrow.status.in_(['funded', 'disputed'])
        ).order_by(Escrow.funded_at.desc()).all()

        def escrow_item(escrow):
            job = db.session.get(Microjob, escrow.job_id)
            item = escrow.to_dict()
            item['job_title'] = job.title if job else None
            return item

        recent = WalletTransaction.query.filter_by(user_id=user_id).order_by(
            WalletTransaction.created_at.desc(), WalletTransaction.id.desc()
        ).limit(5).all()
        pending_withdrawals = Withdrawal.query.filter_by(user_id=user_id, status='pending').all()

        db.session.commit()
        return jsonify({
            'wallet': wallet.to_dict(),
            'pending_earnings': round(sum(e.amount for e in incoming), 2),
            'upcoming_payments': [escrow_item(e) for e in incoming],
            'pending_payments': [escrow_item(e) for e in outgoing],
            'pending_withdrawals': [w.to_dict() for w in pending_withdrawals],
            'recent_transactions': [t.to_dict() for t in recent]
        }), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Get wallet error: {str(e)}")
        return jsonify({'error': 'Failed to load wallet'}), 500

@app.route('/api/wallet/transactions', methods=['GET'])
@login_required
def get_wallet_transactions():
    try:
        user_id = session['user_id']
        filter_type = request.args.get('filter', 'all')
        page = max(parse_int(request.args.get('page'), 1), 1)
        per_page = min(max(parse_int(request.args.get('per_page'), 20), 1), 100)

        query = WalletTransaction.query.filter_by(user_id=user_id)
        if filter_type == 'chat':
            query = query.filter_by(reference_type='chat_transfer')
        elif filter_type != 'all':
            query = query.filter_by(type=filter_type)

        pagination = query.order_by(
            WalletTransaction.created_at.desc(), WalletTransaction.id.desc()
        ).paginate(page=page, per_page=per_page, error_out=False)

        return jsonify({
            'transactions': [t.to_dict() for t in pagination.items],
            'pagination': {
                'page': page,
                'per_page': per_page,
                'total': pagination.total,
                'totalPages': pagination.pages
            }
        }), 200
    except Exception as e:
        app.logger.error(f"Get transactions error: {str(e)}")
        return jsonify({'error': 'Failed to load transactions'}), 500

@app.route('/api/wallet/payment-methods', methods=['GET'])
@login_required
def get_payment_methods():
    methods = PaymentMethod.query.filter_by(user_id=session['user_id']).order_by(
        PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc()
    ).all()
    return jsonify({'payment_methods': [m.to_dict() for m in methods]}), 200

@app.route('/api/wallet/payment-methods', methods=['POST'])
@login_required
def add_payment_method():
    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}

        method_type = data.get('method_type')
        if method_type not in PaymentMethod.METHOD_TYPES:
            return jsonify({'error': f'method_type must be one of: {", ".join(PaymentMethod.METHOD_TYPES)}'}), 400

        last4 = str(data.get('last4') or '')
        if last4 and not re.match(r'^\d{4}$', last4):
            return jsonify({'error': 'last4 must be 4 digits'}), 400

        existing = PaymentMethod.query.filter_by(user_id=user_id).count()
        is_default = parse_bool(data.get('is_default', False)) or existing == 0
        if is_default:
            PaymentMethod.query.filter_by(user_id=user_id).update({'is_default': False})

        method = PaymentMethod(
            user_id=user_id,
            method_type=method_type,
            label=sanitize_input(data.get('label', ''), max_length=100) or method_type.replace('_', ' ').title(),
            last4=last4 or None,
            provider_reference=sanitize_input(data.get('provider_reference', ''), max_length=100) or None,
            is_default=is_default
        )
        db.session.add(method)
        db.session.commit()
        return jsonify({'message': 'Payment method added', 'payment_method': method.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Add payment method error: {str(e)}")
        return jsonify({'error': 'Failed to add payment method'}), 500

@app.route('/api/wallet/payment-methods/<int:method_id>', methods=['DELETE'])
@login_required
def delete_payment_method(method_id):
    method = PaymentMethod.query.filter_by(id=method_id, user_id=session['user_id']).first()
    if not method:
        return jsonify({'error': 'Payment method not found'}), 404

    if Withdrawal.query.filter_by(payment_method_id=method.id, status='pending').first():
        return jsonify({'error': 'Payment method has a pending withdrawal'}), 400

    try:
        was_default = method.is_default
        db.session.delete(method)
        db.session.flush()
        if was_default:
            replacement = PaymentMethod.query.filter_by(user_id=session['user_id']).order_by(
                PaymentMethod.created_at.desc()
            ).first()
            if replacement:
                replacement.is_default = True
        db.session.commit()
        return jsonify({'success': True}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete payment method error: {str(e)}")
        return jsonify({'error': 'Failed to delete payment method'}), 500

@app.route('/api/wallet/fees/<fee_type>', methods=['GET'])
@login_required
def preview_fee(fee_type):
    """Fee quote shown in the deposit/withdraw dialogs"""
    if fee_type not in FeeSetting.FEE_TYPES:
        return jsonify({'error': 'Unknown fee type'}), 404

    setting = get_fee_setting(fee_type)
    amount = parse_amount(request.args.get('amount'))
    data = {'fee_setting': setting.to_dict() if setting else None}
    if amount is not None and amount > 0:
        fee = calculate_fee(amount, setting)
        data.update({'amount': amount, 'fee': fee, 'net_amount': round(amount - fee, 2)})
    return jsonify(data), 200

@app.route('/api/wallet/deposit', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def deposit_funds():
    user_id = session['user_id']
    data = request.get_json(silent=True) or {}

    amount = parse_amount(data.get('amount'))
    if amount is None or amount < MIN_DEPOSIT or amount > MAX_DEPOSIT:
        return jsonify({'error': f'Deposit amount must be between {MIN_DEPOSIT:.2f} and {MAX_DEPOSIT:.2f}'}), 400

    method_id = parse_int(data.get('paymentMethodId', data.get('payment_method_id')))
    if not method_id:
        return jsonify({'error': 'Payment method is required'}), 400

    method = PaymentMethod.query.filter_by(id=method_id, user_id=user_id).first()
    if not method:
        return jsonify({'error': 'Payment method not found'}), 404

    gateway = 'manual'
    reference = None
    try:
        fee = calculate_fee(amount, get_fee_setting('deposit'))
        net = round(amount - fee, 2)

        reference = generate_reference_number('DEP')
        if stripe.api_key:
            if not method.provider_reference:
                return jsonify({'error': 'This payment method cannot be charged'}), 400
            try:
                intent = stripe.PaymentIntent.create(
                    amount=int(round(amount * 100)),
                    currency='usd',
                    payment_method=method.provider_reference,
                    confirm=True,
                    automatic_payment_methods={'enabled': True, 'allow_redirects': 'never'},
                    metadata={'user_id': user_id, 'reference': reference},
                    description='Wallet deposit'
                )
            except stripe.CardError as e:
                return jsonify({'error': e.user_message or 'Your card was declined'}), 402
            except stripe.StripeError as e:
                app.logger.error(f"Stripe deposit error: {str(e)}")
                return jsonify({'error': 'Payment provider error. Please try again.'}), 502

            if intent.status != 'succeeded':
                return jsonify({'error': f'Payment not completed (status: {intent.status})'}), 402
            reference = intent.id
            gateway = 'stripe'
        else:
            app.logger.info("Stripe not configured, recording manual deposit")

        wallet = get_or_create_wallet(user_id)
        before = wallet.deposit_balance
        wallet.deposit_balance = round(wallet.deposit_balance + net, 2)
        wallet.total_deposited = round(wallet.total_deposited + net, 2)

        transaction = record_transaction(
            user_id, 'deposit', net, 'deposit', before, wallet.deposit_balance,
            f'Deposit via {method.label} ({gateway})', reference, 'deposit', fee=fee
        )
        record_platform_fee(user_id, fee, 'Deposit fee', reference, 'deposit')
        db.session.commit()

        security_logger.log_financial('deposit', f'Wallet deposit via {gateway}', amount, 'wallet_transaction',
                                      transaction.id)

        return jsonify({
            'message': 'Deposit successful',
            'amount': amount,
            'fee': fee,
            'net_amount': net,
            'reference': reference,
            'wallet': wallet.to_dict()
        }), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Deposit error: {str(e)}")
        if gateway == 'stripe':
            # Card was charged but the wallet was not credited
            app.logger.critical(f"Uncredited Stripe deposit: payment_intent={reference} user={user_id} amount={amount}")
        return jsonify({'error': 'Failed to process deposit'}), 500

@app.route('/api/wallet/withdraw', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=5)
def request_withdrawal():
    """Withdraw from earnings; deposits can only be spent on the platform"""
    user_id = session['user_id']
    data = request.get_json(silent=True) or {}

    amount = parse_amount(data.get('amount'))
    if amount is None or amount < MIN_WITHDRAWAL:
        return jsonify({'error': f'Minimum withdrawal is {MIN_WITHDRAWAL:.2f}'}), 400

    method_id = parse_int(data.get('paymentMethodId', data.get('payment_method_id')))
    method = PaymentMethod.query.filter_by(id=method_id, user_id=user_id).first() if method_id else None
    if not method:
        return jsonify({'error': 'A valid payment method is required'}), 400

    try:
        wallet = get_or_create_wallet(user_id)
        if amount > wallet.earnings_balance:
            return jsonify({
                'error': 'Insufficient earnings balance. Deposit balance cannot be withdrawn.',
                'earnings_balance': round(wallet.earnings_balance, 2)
            }), 400

        fee = calculate_fee(amount, get_fee_setting('withdrawal'))
        withdrawal = Withdrawal(
            withdrawal_number=generate_reference_number('WDR'),
            user_id=user_id,
            amount=amount,
            fee=fee,
            net_amount=round(amount - fee, 2),
            payment_method_id=method.id,
            status='pending'
        )
        db.session.add(withdrawal)

        before = wallet.earnings_balance
        wallet.earnings_balance = round(wallet.earnings_balance - amount, 2)
        record_transaction(
            user_id, 'withdrawal', -amount, 'earnings', before, wallet.earnings_balance,
            f'Withdrawal to {method.label}', withdrawal.withdrawal_number, 'withdrawal',
            fee=fee, status='pending'
        )
        db.session.commit()

        security_logger.log_financial('withdrawal_requested', 'Withdrawal requested', amount, 'withdrawal',
                                      withdrawal.id)

        return jsonify({
            'message': 'Withdrawal requested. It will be processed by an administrator.',
            'withdrawal': withdrawal.to_dict(),
            'wallet': wallet.to_dict()
        }), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Withdrawal error: {str(e)}")
        return jsonify({'error': 'Failed to request withdrawal'}), 500

@app.route('/api/wallet/withdrawals', methods=['GET'])
@login_required
def get_my_withdrawals():
    withdrawals = Withdrawal.query.filter_by(user_id=session['user_id']).order_by(
        Withdrawal.requested_at.desc()
    ).all()
    return jsonify({'withdrawals': [w.to_dict() for w in withdrawals]}), 200

@app.route('/api/wallet/transfer', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def transfer_funds():
    """Chat transfer: sender's earnings to the recipient's deposit balance"""
    user_id = session['user_id']
    data = request.get_json(silent=True) or {}

    amount = parse_amount(data.get('amount'))
    if amount is None or amount <= 0:
        return jsonify({'error': 'Amount must be positive'}), 400

    recipient = None
    if data.get('recipient_id') is not None:
        recipient = db.session.get(User, parse_int(data.get('recipient_id'), 0))
    elif data.get('recipient_username'):
        recipient = User.query.filter_by(username=data['recipient_username']).first()
    if not recipient:
        return jsonify({'error': 'Recipient not found'}), 404
    if recipient.id == user_id:
        return jsonify({'error': 'You cannot transfer to yourself'}), 400
    if recipient.is_suspended:
        return jsonify({'error': 'Recipient account is suspended'}), 400

    try:
        sender_wallet = get_or_create_wallet(user_id)
        if amount > sender_wallet.earnings_balance:
            return jsonify({'error': 'Insufficient earnings balance'}), 400

        recipient_wallet = get_or_create_wallet(recipient.id)
        note = sanitize_input(data.get('note', ''), max_length=200)
        reference = generate_reference_number('TRF')
        sender = db.session.get(User, user_id)

        before = sender_wallet.earnings_balance
        sender_wallet.earnings_balance = round(sender_wallet.earnings_balance - amount, 2)
        record_transaction(user_id, 'transfer', -amount, 'earnings', before, sender_wallet.earnings_balance,
                           f'Transfer to {recipient.username}' + (f': {note}' if note else ''),
                           reference, 'chat_transfer')

        before = recipient_wallet.deposit_balance
        recipient_wallet.deposit_balance = round(recipient_wallet.deposit_balance + amount, 2)
        record_transaction(recipient.id, 'transfer', amount, 'deposit', before, recipient_wallet.deposit_balance,
                           f'Transfer from {sender.username}' + (f': {note}' if note else ''),
                           reference, 'chat_transfer')

        notify(recipient.id, 'payment', 'Funds Received',
               f'{sender.username} sent you {amount:.2f}.', '/wallet')
        db.session.commit()

        security_logger.log_financial('transfer', f'Transfer to user {recipient.id}', amount,
                                      'wallet_transaction', reference)

        return jsonify({'message': 'Transfer completed', 'reference': reference,
                        'wallet': sender_wallet.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Transfer error: {str(e)}")
        return jsonify({'error': 'Failed to transfer funds'}), 500

@app.route('/api/admin/withdrawals', methods=['GET'])
@admin_required
def admin_get_withdrawals():
    status = request.args.get('status', 'pending')
    query = Withdrawal.query
    if status != 'all':
        query = query.filter_by(status=status)
    withdrawals = query.order_by(Withdrawal.requested_at.asc()).all()
    return jsonify({'withdrawals': [w.to_dict() for w in withdrawals]}), 200

@app.route('/api/admin/withdrawals/<int:withdrawal_id>', methods=['PUT'])
@admin_required
def admin_process_withdrawal(withdrawal_id):
    withdrawal = db.session.get(Withdrawal, withdrawal_id)
    if not withdrawal:
        return jsonify({'error': 'Withdrawal not found'}), 404

    if withdrawal.status != 'pending':
        return jsonify({'error': f'Withdrawal already {withdrawal.status}'}), 400

    data = request.get_json(silent=True) or {}
    action = data.get('action')
    if action not in ('complete', 'reject'):
        return jsonify({'error': 'Invalid action'}), 400

    try:
        wallet = get_or_create_wallet(withdrawal.user_id)
        ledger_entry = WalletTransaction.query.filter_by(
            reference_id=withdrawal.withdrawal_number, reference_type='withdrawal', type='withdrawal'
        ).first()

        if action == 'complete':
            withdrawal.status = 'completed'
            wallet.total_withdrawn = round(wallet.total_withdrawn + withdrawal.amount, 2)
            if ledger_entry:
                ledger_entry.status = 'completed'
            record_platform_fee(withdrawal.user_id, withdrawal.fee, 'Withdrawal fee',
                                withdrawal.withdrawal_number, 'withdrawal')
            notify(withdrawal.user_id, 'withdrawal', 'Withdrawal Completed',
                   f'Your withdrawal of {withdrawal.amount:.2f} has been paid out.', '/wallet', withdrawal.id)
        else:
            withdrawal.status = 'rejected'
            before = wallet.earnings_balance
            wallet.earnings_balance = round(wallet.earnings_balance + withdrawal.amount, 2)
            if ledger_entry:
                ledger_entry.status = 'failed'
            record_transaction(withdrawal.user_id, 'refund', withdrawal.amount, 'earnings', before,
                               wallet.earnings_balance, 'Withdrawal rejected', withdrawal.withdrawal_number,
                               'withdrawal')
            notify(withdrawal.user_id, 'withdrawal', 'Withdrawal Rejected',
                   f'Your withdrawal of {withdrawal.amount:.2f} was rejected and returned to your earnings.',
                   '/wallet', withdrawal.id)

        withdrawal.admin_notes = sanitize_input(data.get('notes', ''), max_length=2000)
        withdrawal.processed_at = datetime.utcnow()
        withdrawal.processed_by = session['user_id']
        db.session.commit()

        security_logger.log_admin_action(f'Withdrawal {action}d', 'withdrawal', withdrawal.id,
                                         details={'amount': withdrawal.amount})

        return jsonify({'message': f'Withdrawal {withdrawal.status}', 'withdrawal': withdrawal.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Process withdrawal error: {str(e)}")
        return jsonify({'error': 'Failed to process withdrawal'}), 500

@app.route('/api/admin/fees', methods=['GET'])
@admin_required
def admin_get_fees():
    return jsonify({'fees': [f.to_dict() for f in FeeSetting.query.order_by(FeeSetting.fee_type).all()]}), 200

@app.route('/api/admin/fees/<fee_type>', methods=['PUT'])
@admin_required
def admin_update_fee(fee_type):
    if fee_type not in FeeSetting.FEE_TYPES:
        return jsonify({'error': 'Unknown fee type'}), 404

    data = request.get_json(silent=True) or {}
    try:
        setting = get_fee_setting(fee_type)
        if not setting:
            setting = FeeSetting(fee_type=fee_type)
            db.session.add(setting)

        for key in ('fee_percentage', 'fee_fixed', 'minimum_fee'):
            if key in data:
                value = parse_amount(data[key])
                if value is None or value < 0:
                    db.session.rollback()
                    return jsonify({'error': f'{key} must be zero or more'}), 400
                setattr(setting, key, value)

        if 'fee_percentage' in data and setting.fee_percentage > 100:
            db.session.rollback()
            return jsonify({'error': 'fee_percentage cannot exceed 100'}), 400

        if 'maximum_fee' in data:
            if data['maximum_fee'] is None:
                setting.maximum_fee = None
            else:
                value = parse_amount(data['maximum_fee'])
                if value is None or value < 0:
                    db.session.rollback()
                    return jsonify({'error': 'maximum_fee must be zero or more'}), 400
                setting.maximum_fee = value

        if setting.maximum_fee is not None and setting.maximum_fee < (setting.minimum_fee or 0):
            db.session.rollback()
            return jsonify({'error': 'maximum_fee cannot be below minimum_fee'}), 400

        if 'is_active' in data:
            setting.is_active = parse_bool(data['is_active'])

        db.session.commit()
        security_logger.log_admin_action(f'Updated {fee_type} fees', 'fee_setting', fee_type,
                                         details=setting.to_dict())
        return jsonify({'message': 'Fee settings updated', 'fee_setting': setting.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update fee error: {str(e)}")
        return jsonify({'error': 'Failed to update fee settings'}), 500

def get_or_create_user_coins(user_id):
    coins = UserCoins.query.filter_by(user_id=user_id).first()
    if not coins:
        coins = UserCoins(user_id=user_id, available_coins=0, total_earned_coins=0, total_cashed_out_coins=0)
        db.session.add(coins)
        db.session.flush()
    return coins

def can_collect_daily_coins(coins, now=None):
    now = now or datetime.utcnow()
    return coins.last_collected_at is None or coins.last_collected_at.date() < now.date()

@app.route('/api/coins', methods=['GET'])
@login_required
def get_coins():
    try:
        settings = get_coin_settings()
        coins = get_or_create_user_coins(session['user_id'])
        db.session.commit()

        now = datetime.utcnow()
        next_collect_at = None
        if not can_collect_daily_coins(coins, now):
            next_collect_at = datetime.combine(now.date() + timedelta(days=1), datetime.min.time()).isoformat()

        return jsonify({
            'settings': settings,
            'coins': coins.to_dict(),
            'can_collect': settings['is_enabled'] and can_collect_daily_coins(coins, now),
            'next_collect_at': next_collect_at,
            'cashout_value': round(coins.available_coins * float(settings['coin_to_usd_rate']), 2)
        }), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Get coins error: {str(e)}")
        return jsonify({'error': 'Failed to load coins'}), 500

@app.route('/api/coins/collect', methods=['POST'])
@login_required
def collect_daily_coins():
    settings = get_coin_settings()
    if not settings['is_enabled']:
        return jsonify({'error': 'Coin system is disabled'}), 400

    try:
        coins = get_or_create_user_coins(session['user_id'])
        now = datetime.utcnow()
        if not can_collect_daily_coins(coins, now):
            db.session.rollback()
            return jsonify({'error': 'Daily coins already collected. Come back tomorrow.'}), 400

        reward = int(settings['daily_reward_coins'])
        coins.available_coins += reward
        coins.total_earned_coins += reward
        coins.last_collected_at = now
        touch_user_activity(db.session.get(User, session['user_id']))
        db.session.commit()

        return jsonify({'message': f'Collected {reward} coins', 'collected': reward, 'coins': coins.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Collect coins error: {str(e)}")
        return jsonify({'error': 'Failed to collect coins'}), 500

@app.route('/api/coins/cashout', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=5)
def cashout_coins():
    """Convert coins to wallet earnings at the configured rate"""
    settings = get_coin_settings()
    if not settings['is_enabled']:
        return jsonify({'error': 'Coin system is disabled'}), 400

    data = request.get_json(silent=True) or {}
    amount = parse_int(data.get('coins'))
    if amount is None or amount <= 0:
        return jsonify({'error': 'Coins must be a positive whole number'}), 400

    min_coins = int(settings['min_cashout_coins'])
    if amount < min_coins:
        return jsonify({'error': f'Minimum cashout is {min_coins} coins'}), 400

    try:
        user_id = session['user_id']
        coins = get_or_create_user_coins(user_id)
        if amount > coins.available_coins:
            db.session.rollback()
            return jsonify({'error': 'Insufficient coins'}), 400

        rate = float(settings['coin_to_usd_rate'])
        gross = amount * rate
        fee = round(gross * float(settings['cashout_fee_percentage']) / 100, 2)
        net = round(gross - fee, 2)
        if net <= 0:
            db.session.rollback()
            return jsonify({'error': 'Cashout amount is too small'}), 400

        coins.available_coins -= amount
        coins.total_cashed_out_coins += amount

        cashout = CoinCashout(
            user_id=user_id,
            coins_amount=amount,
            coin_to_usd_rate=rate,
            gross_amount=round(gross, 2),
            fee_amount=fee,
            net_amount=net
        )
        db.session.add(cashout)
        db.session.flush()

        wallet = get_or_create_wallet(user_id)
        before = wallet.earnings_balance
        wallet.earnings_balance = round(wallet.earnings_balance + net, 2)
        wallet.total_earned = round(wallet.total_earned + net, 2)
        record_transaction(user_id, 'earning', net, 'earnings', before, wallet.earnings_balance,
                           f'Cashed out {amount} coins', cashout.id, 'coin_cashout', fee=fee)
        record_platform_fee(user_id, fee, 'Coin cashout fee', cashout.id, 'coin_cashout')
        db.session.commit()

        security_logger.log_financial('coin_cashout', f'Cashed out {amount} coins', net, 'coin_cashout', cashout.id)

        return jsonify({
            'message': 'Coins cashed out',
            'cashout': cashout.to_dict(),
            'coins': coins.to_dict(),
            'wallet': wallet.to_dict()
        }), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Coin cashout error: {str(e)}")
        return jsonify({'error': 'Failed to cash out coins'}), 500

@app.route('/api/settings/coins', methods=['GET'])
def get_coin_settings_route():
    return jsonify(get_coin_settings()), 200

@app.route('/api/admin/settings/coins', methods=['PUT'])
@admin_required
def update_coin_settings():
    data = request.get_json(silent=True) or {}
    settings = get_coin_settings()

    if 'is_enabled' in data:
        settings['is_enabled'] = parse_bool(data['is_enabled'])
    if 'coin_to_usd_rate' in data:
        try:
            rate = float(data['coin_to_usd_rate'])
        except (TypeError, ValueError):
            rate = 0
        if not math.isfinite(rate) or rate <= 0:
            return jsonify({'error': 'coin_to_usd_rate must be positive'}), 400
        settings['coin_to_usd_rate'] = rate
    for key in ('min_cashout_coins', 'daily_reward_coins'):
        if key in data:
            value = parse_int(data[key])
            if value is None or value < 0:
                return jsonify({'error': f'{key} must be zero or more'}), 400
            settings[key] = value
    if 'cashout_fee_percentage' in data:
        value = parse_amount(data['cashout_fee_percentage'])
        if value is None or value < 0 or value > 100:
            return jsonify({'error': 'cashout_fee_percentage must be between 0 and 100'}), 400
        settings['cashout_fee_percentage'] = value

    try:
        set_site_setting('coin_system', json.dumps(settings), 'Coin rewards and cashout', session['user_id'])
        security_logger.log_admin_action('Updated coin settings', 'site_settings', 'coin_system', details=settings)
        return jsonify({'message': 'Coin settings updated', 'settings': settings}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update coin settings error: {str(e)}")
        return jsonify({'error': 'Failed to update coin settings'}), 500

@app.route('/api/admin/settings/microjob-algorithm', methods=['GET'])
@admin_required
def get_algorithm_settings_route():
    return jsonify(get_algorithm_settings()), 200

@app.route('/api/admin/settings/microjob-algorithm', methods=['PUT'])
@admin_required
def update_algorithm_settings():
    data = request.get_json(silent=True) or {}
    settings = get_algorithm_settings()

    if 'algorithm_type' in data:
        if data['algorithm_type'] not in MicrojobAlgorithmService.ALGORITHM_TYPES:
            return jsonify({'error': f'algorithm_type must be one of: {", ".join(MicrojobAlgorithmService.ALGORITHM_TYPES)}'}), 400
        settings['algorithm_type'] = data['algorithm_type']
    if 'is_enabled' in data:
        settings['is_enabled'] = parse_bool(data['is_enabled'])
    for key, upper in (('rotation_hours', 720), ('front_page_size', 200)):
        if key in data:
            value = parse_int(data[key])
            if value is None or value < 1 or value > upper:
                return jsonify({'error': f'{key} must be between 1 and {upper}'}), 400
            settings[key] = value

    try:
        set_site_setting('microjob_algorithm', json.dumps(settings), 'Job listing order', session['user_id'])
        security_logger.log_admin_action('Updated listing algorithm', 'site_settings', 'microjob_algorithm',
                                         details=settings)
        return jsonify({'message': 'Algorithm settings updated', 'settings': settings}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update algorithm settings error: {str(e)}")
        return jsonify({'error': 'Failed to update algorithm settings'}), 500

@app.route('/api/admin/settings/job-approval', methods=['PUT'])
@admin_required
def update_job_approval_setting():
    data = request.get_json(silent=True) or {}
    required = parse_bool(data.get('required', False))
    try:
        set_site_setting('job_approval_required', 'true' if required else 'false',
                         'New jobs wait for admin approval', session['user_id'])
        return jsonify({'message': 'Setting updated', 'job_approval_required': required}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update job approval setting error: {str(e)}")
        return jsonify({'error': 'Failed to update setting'}), 500

# Marketplace reviews
REVIEW_SORTS = {
    'newest': (MarketplaceReview.created_at.desc(),),
    'oldest': (MarketplaceReview.created_at.asc(),),
    'highest': (MarketplaceReview.rating.desc(), MarketplaceReview.created_at.desc()),
    'lowest': (MarketplaceReview.rating.asc(), MarketplaceReview.created_at.desc()),
}

def parse_star_rating(value):
    rating = parse_int(value)
    if rating is None or rating < 1 or rating > 5:
        return None
    return rating

@app.route('/api/marketplace/reviews', methods=['GET'])
def get_marketplace_reviews():
    try:
        page = max(parse_int(request.args.get('page'), 1), 1)
        limit = min(max(parse_int(request.args.get('limit'), 5), 1), 50)
        search = sanitize_input(request.args.get('search', ''), max_length=100)
        rating = request.args.get('rating', 'all')
        sort_by = request.args.get('sortBy', 'newest')
        reviewee_id = parse_int(request.args.get('revieweeId'))

        query = MarketplaceReview.query.join(
            User, MarketplaceReview.reviewer_id == User.id
        ).filter(MarketplaceReview.is_deleted.is_(False))

        if reviewee_id:
            query = query.filter(MarketplaceReview.reviewee_id == reviewee_id)

        if rating != 'all':
            stars = parse_star_rating(rating)
            if stars is None:
                return jsonify({'error': 'rating must be 1-5 or all'}), 400
            query = query.filter(MarketplaceReview.rating == stars)

        if search:
            pattern = f'%{search}%'
            query = query.filter(or_(
                MarketplaceReview.title.ilike(pattern),
                MarketplaceReview.comment.ilike(pattern),
                User.username.ilike(pattern)
            ))

        order = REVIEW_SORTS.get(sort_by, REVIEW_SORTS['newest'])
        pagination = query.order_by(*order, MarketplaceReview.id.desc()).paginate(
            page=page, per_page=limit, error_out=False
        )

        return jsonify({
            'reviews': [r.to_dict() for r in pagination.items],
            'pagination': {
                'page': page,
                'limit': limit,
                'total': pagination.total,
                'totalPages': pagination.pages
            }
        }), 200
    except Exception as e:
        app.logger.error(f"Get reviews error: {str(e)}")
        return jsonify({'error': 'Failed to fetch reviews'}), 500

@app.route('/api/marketplace/reviews', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def create_marketplace_review():
    user_id = session['user_id']
    data = request.get_json(silent=True) or {}

    required = ('order_id', 'reviewee_id', 'reviewer_type', 'rating', 'title', 'comment')
    missing = [field for field in required if data.get(field) in (None, '')]
    if missing:
        return jsonify({'error': f'Missing required fields: {", ".join(missing)}'}), 400

    if data.get('reviewer_id') is not None and parse_int(data.get('reviewer_id')) != user_id:
        return jsonify({'error': 'You can only submit reviews as yourself'}), 403

    reviewee_id = parse_int(data.get('reviewee_id'))
    if reviewee_id == user_id:
        return jsonify({'error': 'You cannot review yourself'}), 400

    if data['reviewer_type'] not in MarketplaceReview.REVIEWER_TYPES:
        return jsonify({'error': 'reviewer_type must be buyer or seller'}), 400

    rating = parse_star_rating(data['rating'])
    if rating is None:
        return jsonify({'error': 'Rating must be between 1 and 5'}), 400

    sub_ratings = {}
    for key in MarketplaceReview.SUB_RATINGS:
        if data.get(key) is None:
            sub_ratings[key] = rating
            continue
        value = parse_star_rating(data[key])
        if value is None:
            return jsonify({'error': f'{key} must be between 1 and 5'}), 400
        sub_ratings[key] = value

    reviewee = db.session.get(User, reviewee_id) if reviewee_id else None
    if not reviewee:
        return jsonify({'error': 'Reviewee not found'}), 404

    order_id = sanitize_input(str(data['order_id']), max_length=100)
    if MarketplaceReview.query.filter_by(order_id=order_id, reviewer_id=user_id).first():
        return jsonify({'error': 'Review already exists for this order'}), 409

    try:
        review = MarketplaceReview(
            order_id=order_id,
            reviewer_id=user_id,
            reviewee_id=reviewee.id,
            reviewer_type=data['reviewer_type'],
            rating=rating,
            title=sanitize_input(data['title'], max_length=200),
            comment=sanitize_input(data['comment'], max_length=5000),
            **sub_ratings
        )
        db.session.add(review)
        db.session.flush()
        recalculate_user_rating(reviewee.id)
        notify(reviewee.id, 'review', 'New Review',
               f'You received a {rating}-star review.', f'/profile/{reviewee.id}', review.id)
        db.session.commit()

        return jsonify({'message': 'Review created successfully', 'review': review.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create review error: {str(e)}")
        return jsonify({'error': 'Failed to create review'}), 500

def get_editable_review(review_id):
    """Returns (review, error response)"""
    review = db.session.get(MarketplaceReview, review_id)
    if not review or review.is_deleted:
        return None, (jsonify({'error': 'Review not found'}), 404)
    if review.reviewer_id != session['user_id']:
        return None, (jsonify({'error': 'Unauthorized to edit this review'}), 403)
    return review, None

@app.route('/api/marketplace/reviews/<int:review_id>', methods=['PUT'])
@login_required
def update_marketplace_review(review_id):
    review, error = get_editable_review(review_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    if 'rating' in data:
        rating = parse_star_rating(data['rating'])
        if rating is None:
            return jsonify({'error': 'Rating must be between 1 and 5'}), 400
        review.rating = rating
    for key in MarketplaceReview.SUB_RATINGS:
        if key in data:
            value = parse_star_rating(data[key])
            if value is None:
                db.session.rollback()
                return jsonify({'error': f'{key} must be between 1 and 5'}), 400
            setattr(review, key, value)
    if data.get('title'):
        review.title = sanitize_input(data['title'], max_length=200)
    if data.get('comment'):
        review.comment = sanitize_input(data['comment'], max_length=5000)

    try:
        review.updated_at = datetime.utcnow()
        recalculate_user_rating(review.reviewee_id)
        db.session.commit()
        return jsonify({'message': 'Review updated successfully', 'review': review.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update review error: {str(e)}")
        return jsonify({'error': 'Failed to update review'}), 500

@app.route('/api/marketplace/reviews/<int:review_id>', methods=['DELETE'])
@login_required
def delete_marketplace_review(review_id):
    review, error = get_editable_review(review_id)
    if error:
        return error

    try:
        review.is_deleted = True
        review.deleted_at = datetime.utcnow()
        db.session.flush()
        recalculate_user_rating(review.reviewee_id)
        db.session.commit()
        return jsonify({'message': 'Review deleted successfully'}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete review error: {str(e)}")
        return jsonify({'error': 'Failed to delete review'}), 500

# Admin: users and job moderation
@app.route('/api/admin/users', methods=['GET'])
@admin_required
def admin_get_users():
    """Get all users for admin management"""
    try:
        page = max(parse_int(request.args.get('page'), 1), 1)
        per_page = min(max(parse_int(request.args.get('per_page'), 20), 1), 100)
        search = sanitize_input(request.args.get('search', ''), max_length=100)
        status = request.args.get('status', 'all')

        query = User.query
        if search:
            pattern = f'%{search}%'
            query = query.filter(or_(
                User.username.ilike(pattern),
                User.email.ilike(pattern),
                User.first_name.ilike(pattern),
                User.last_name.ilike(pattern)
            ))
        if status == 'suspended':
            query = query.filter(User.is_suspended.is_(True))
        elif status == 'active':
            query = query.filter(User.is_suspended.is_(False))

        users = query.order_by(User.created_at.desc()).paginate(page=page, per_page=per_page, error_out=False)

        return jsonify({
            'users': [u.to_dict() for u in users.items],
            'total': users.total,
            'pages': users.pages,
            'current_page': users.page
        }), 200
    except Exception as e:
        app.logger.error(f"Admin get users error: {str(e)}")
        return jsonify({'error': 'Failed to retrieve users'}), 500

@app.route('/api/admin/users/<int:user_id>/suspend', methods=['POST'])
@admin_required
def admin_suspend_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'User not found'}), 404

    if user.is_admin:
        return jsonify({'error': 'Admin accounts cannot be suspended'}), 400

    data = request.get_json(silent=True) or {}
    reason = sanitize_input(data.get('reason', ''), max_length=1000)
    if not reason:
        return jsonify({'error': 'A suspension reason is required'}), 400

    try:
        user.is_suspended = True
        user.suspension_reason = reason
        user.suspended_at = datetime.utcnow()
        user.suspended_by = session['user_id']
        db.session.commit()

        security_logger.log_admin_action(f'Suspended user {user.username}', 'user', user.id,
                                         details={'reason': reason})
        return jsonify({'message': 'User suspended', 'user': user.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Suspend user error: {str(e)}")
        return jsonify({'error': 'Failed to suspend user'}), 500

@app.route('/api/admin/users/<int:user_id>/unsuspend', methods=['POST'])
@admin_required
def admin_unsuspend_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'User not found'}), 404

    if not user.is_suspended:
        return jsonify({'error': 'User is not suspended'}), 400

    try:
        user.is_suspended = False
        user.suspension_reason = None
        user.suspended_at = None
        user.suspended_by = None
        db.session.commit()

        security_logger.log_admin_action(f'Unsuspended user {user.username}', 'user', user.id)
        return jsonify({'message': 'User unsuspended', 'user': user.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Unsuspend user error: {str(e)}")
        return jsonify({'error': 'Failed to unsuspend user'}), 500

@app.route('/api/admin/jobs', methods=['GET'])
@admin_required
def admin_get_jobs():
    status = request.args.get('status', 'pending')
    query = Microjob.query
    if status != 'all':
        query = query.filter_by(status=status)
    jobs = query.order_by(Microjob.created_at.asc()).all()
    return jsonify({'jobs': [j.to_dict() for j in jobs]}), 200

@app.route('/api/admin/jobs/<int:job_id>/review', methods=['POST'])
@admin_required
def admin_review_job(job_id):
    job = db.session.get(Microjob, job_id)
    if not job:
        return jsonify({'error': 'Job not found'}), 404

    if job.status != 'pending':
        return jsonify({'error': 'Only pending jobs can be reviewed'}), 400

    data = request.get_json(silent=True) or {}
    action = data.get('action')
    if action not in ('approve', 'reject'):
        return jsonify({'error': 'Invalid action'}), 400

    reason = sanitize_input(data.get('reason', ''), max_length=1000)
    if action == 'reject' and not reason:
        return jsonify({'error': 'A rejection reason is required'}), 400

    try:
        if action == 'approve':
            job.status = 'approved'
            notify(job.employer_id, 'job', 'Job Approved', f'Your job "{job.title}" is now live.',
                   f'/jobs/{job.id}', job.id)
        else:
            job.status = 'rejected'
            job.rejection_reason = reason
            notify(job.employer_id, 'job', 'Job Rejected',
                   f'Your job "{job.title}" was rejected: {reason}', f'/jobs/{job.id}', job.id)
        db.session.commit()

        security_logger.log_admin_action(f'Job {action}d', 'microjob', job.id, details={'reason': reason})
        return jsonify({'message': f'Job {job.status}', 'job': job.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Review job error: {str(e)}")
        return jsonify({'error': 'Failed to review job'}), 500

# Admin analytics
ANALYTICS_RANGES = {'7d': 7, '30d': 30, '90d': 90, '1y': 365}

def month_keys(start, end):
    """YYYY-MM keys from start's month through end's month"""
    keys = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        keys.append(f'{year:04d}-{month:02d}')
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return keys

def build_analytics(time_range, now=None):
    """
    Platform metrics for the admin dashboard over a time range.

    Revenue is the sum of platform fee and penalty ledger entries.
    """
    now = now or datetime.utcnow()
    start = now - timedelta(days=ANALYTICS_RANGES[time_range])
    revenue_types = ('fee', 'penalty')

    total_users = User.query.count()
    total_jobs = Microjob.query.count()
    active_jobs = Microjob.query.filter(Microjob.status.in_(Microjob.LISTED_STATUSES)).count()
    total_revenue = db.session.query(
        func.coalesce(func.sum(func.abs(WalletTransaction.amount)), 0)
    ).filter(WalletTransaction.type.in_(revenue_types)).scalar()
    payment_volume = db.session.query(
        func.coalesce(func.sum(Escrow.amount), 0)
    ).filter(Escrow.status == 'released').scalar()

    # User growth per month
    months = month_keys(start, now)
    users_before = User.query.filter(User.created_at < start).count()
    new_users = {key: 0 for key in months}
    for (created_at,) in db.session.query(User.created_at).filter(User.created_at >= start).all():
        key = created_at.strftime('%Y-%m')
        if key in new_users:
            new_users[key] += 1
    user_growth = []
    running = users_before
    for key in months:
        running += new_users[key]
        user_growth.append({'month': key, 'newUsers': new_users[key], 'totalUsers': running})

    # Distinct users with any recorded activity per day
    activity_sources = (
        (Application.applicant_id, Application.created_at),
        (Microjob.employer_id, Microjob.created_at),
        (WorkProof.worker_id, WorkProof.created_at),
        (WalletTransaction.user_id, WalletTransaction.created_at),
    )
    active_by_day = {}
    for user_column, time_column in activity_sources:
        rows = db.session.query(user_column, time_column).filter(time_column >= start).all()
        for user_id, created_at in rows:
            active_by_day.setdefault(created_at.date(), set()).add(user_id)
    for user_id, last_active in db.session.query(User.id, User.last_active_at).filter(
            User.last_active_at >= start).all():
        active_by_day.setdefault(last_active.date(), set()).add(user_id)

    daily_active = []
    day = start.date()
    while day <= now.date():
        daily_active.append({'date': day.isoformat(), 'activeUsers': len(active_by_day.get(day, ()))})
        day += timedelta(days=1)

    # Revenue per month
    revenue = {key: 0.0 for key in months}
    revenue_rows = db.session.query(WalletTransaction.amount, WalletTransaction.created_at).filter(
        WalletTransaction.type.in_(revenue_types),
        WalletTransaction.created_at >= start
    ).all()
    for amount, created_at in revenue_rows:
        key = created_at.strftime('%Y-%m')
        if key in revenue:
            revenue[key] += abs(amount)
    monthly_revenue = [{'month': key, 'revenue': round(revenue[key], 2)} for key in months]

    # Jobs created in range by category and by status
    jobs_in_range = Microjob.query.filter(Microjob.created_at >= start).all()
    by_category = {}
    by_status = {}
    for job in jobs_in_range:
        name = job.category.name if job.category else 'Uncategorized'
        by_category[name] = by_category.get(name, 0) + 1
        by_status[job.status] = by_status.get(job.status, 0) + 1
    job_count = len(jobs_in_range)
    category_distribution = [
        {
            'category': name,
            'count': count,
            'percentage': round(count * 100.0 / job_count, 1) if job_count else 0.0
        }
        for name, count in sorted(by_category.items(), key=lambda item: (-item[1], item[0]))
    ]

    return {
        'timeRange': time_range,
        'generatedAt': now.isoformat(),
        'totals': {
            'totalUsers': total_users,
            'totalJobs': total_jobs,
            'activeJobs': active_jobs,
            'totalRevenue': round(float(total_revenue or 0), 2),
            'paymentVolume': round(float(payment_volume or 0), 2)
        },
        'userGrowth': user_growth,
        'dailyActiveUsers': daily_active,
        'monthlyRevenue': monthly_revenue,
        'categoryDistribution': category_distribution,
        'jobStatusBreakdown': by_status
    }

@app.route('/api/admin/analytics', methods=['GET'])
@admin_required
def admin_analytics():
    time_range = request.args.get('range', '30d')
    if time_range not in ANALYTICS_RANGES:
        return jsonify({'error': f'range must be one of: {", ".join(ANALYTICS_RANGES)}'}), 400

    try:
        return jsonify(build_analytics(time_range)), 200
    except Exception as e:
        app.logger.error(f"Analytics error: {str(e)}")
        return jsonify({'error': 'Failed to load analytics'}), 500

@app.route('/api/admin/analytics/export', methods=['GET'])
@admin_required
def admin_analytics_export():
    """Download the analytics report as CSV"""
    time_range = request.args.get('range', '30d')
    if time_range not in ANALYTICS_RANGES:
        return jsonify({'error': f'range must be one of: {", ".join(ANALYTICS_RANGES)}'}), 400

    try:
        data = build_analytics(time_range)
        output = io.StringIO()
        writer = csv.writer(output)

        writer.writerow(['Analytics report', time_range, data['generatedAt']])
        writer.writerow([])
        writer.writerow(['Metric', 'Value'])
        for key, value in data['totals'].items():
            writer.writerow([key, value])

        writer.writerow([])
        writer.writerow(['Month', 'New users', 'Total users'])
        for row in data['userGrowth']:
            writer.writerow([row['month'], row['newUsers'], row['totalUsers']])

        writer.writerow([])
        writer.writerow(['Date', 'Active users'])
        for row in data['dailyActiveUsers']:
            writer.writerow([row['date'], row['activeUsers']])

        writer.writerow([])
        writer.writerow(['Month', 'Revenue'])
        for row in data['monthlyRevenue']:
            writer.writerow([row['month'], f"{row['revenue']:.2f}"])

        writer.writerow([])
        writer.writerow(['Category', 'Jobs', 'Percentage'])
        for row in data['categoryDistribution']:
            writer.writerow([row['category'], row['count'], row['percentage']])

        writer.writerow([])
        writer.writerow(['Job status', 'Jobs'])
        for status, count in sorted(data['jobStatusBreakdown'].items()):
            writer.writerow([status, count])

        filename = f"analytics_{time_range}_{datetime.utcnow().strftime('%Y%m%d')}.csv"
        return Response(
            output.getvalue(),
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename={filename}'}
        )
    except Exception as e:
        app.logger.error(f"Analytics export error: {str(e)}")
        return jsonify({'error': 'Failed to export analytics'}), 500

# Server health monitoring
METRIC_REQUIRED_FIELDS = ('cpu_usage', 'memory_total', 'memory_used', 'disk_total', 'disk_used')

def parse_metric(value, default=0.0):
    """Numeric metric field; None when present but not a finite number"""
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number

def usage_percent(used, total):
    return round(used * 100.0 / total, 2) if total else 0.0

@app.route('/api/monitoring/metrics', methods=['GET'])
@admin_required
def get_server_metrics():
    server_id = request.args.get('server_id', MonitoringService.DEFAULT_SERVER_ID)
    try:
        metric = monitoring.latest_metrics(server_id)
        if not metric:
            return jsonify({'error': 'No metrics found for server'}), 404
        return jsonify({'success': True, 'data': metric.to_dict()}), 200
    except Exception as e:
        app.logger.error(f"Get server metrics error: {str(e)}")
        return jsonify({'error': 'Failed to fetch server metrics'}), 500

@app.route('/api/monitoring/metrics', methods=['POST'])
@ingest_auth_required
def ingest_server_metrics():
    data = request.get_json(silent=True) or {}

    if any(data.get(field) is None for field in METRIC_REQUIRED_FIELDS):
        return jsonify({'error': 'Missing required metrics fields'}), 400

    values = {}
    for field in ('cpu_usage', 'cpu_temperature', 'memory_total', 'memory_used', 'memory_free',
                  'disk_total', 'disk_used', 'disk_free', 'network_upload', 'network_download'):
        values[field] = parse_metric(data.get(field), default=None if field in ('memory_free', 'disk_free') else 0.0)
        if values[field] is None and data.get(field) is not None:
            return jsonify({'error': f'Invalid value for {field}'}), 400

    load_average = data.get('load_average') or []
    if not isinstance(load_average, list):
        return jsonify({'error': 'load_average must be an array'}), 400
    load = []
    for index in range(3):
        value = parse_metric(load_average[index] if index < len(load_average) else None)
        if value is None:
            return jsonify({'error': 'Invalid value for load_average'}), 400
        load.append(value)

    server_id = sanitize_input(data.get('server_id') or MonitoringService.DEFAULT_SERVER_ID, max_length=100)

    try:
        memory_free = values['memory_free']
        if memory_free is None:
            memory_free = max(0.0, values['memory_total'] - values['memory_used'])
        disk_free = values['disk_free']
        if disk_free is None:
            disk_free = max(0.0, values['disk_total'] - values['disk_used'])

        metric = ServerMetric(
            server_id=server_id,
            timestamp=datetime.utcnow(),
            cpu_usage_percent=values['cpu_usage'],
            cpu_cores=parse_int(data.get('cpu_cores'), 1) or 1,
            cpu_temperature=values['cpu_temperature'],
            load_average_1m=load[0],
            load_average_5m=load[1],
            load_average_15m=load[2],
            memory_total_gb=values['memory_total'],
            memory_used_gb=values['memory_used'],
            memory_free_gb=memory_free,
            memory_usage_percent=usage_percent(values['memory_used'], values['memory_total']),
            disk_total_gb=values['disk_total'],
            disk_used_gb=values['disk_used'],
            disk_free_gb=disk_free,
            disk_usage_percent=usage_percent(values['disk_used'], values['disk_total']),
            network_upload_mbps=values['network_upload'],
            network_download_mbps=values['network_download'],
            uptime_seconds=parse_int(data.get('uptime'), 0),
            process_count=parse_int(data.get('process_count'), 0)
        )
        db.session.add(metric)
        db.session.commit()

        triggered = monitoring.check_alerts(server_id, metric)

        return jsonify({
            'success': True,
            'data': {'id': metric.id, 'alertsTriggered': len(triggered)}
        }), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Insert server metrics error: {str(e)}")
        return jsonify({'error': 'Failed to insert server metrics'}), 500

@app.route('/api/monitoring/historical', methods=['GET'])
@admin_required
def get_historical_metrics():
    server_id = request.args.get('server_id', MonitoringService.DEFAULT_SERVER_ID)
    hours = parse_int(request.args.get('hours'), 24)
    if hours is None or hours < 1 or hours > 168:
        return jsonify({'error': 'Hours must be between 1 and 168'}), 400

    interval = request.args.get('interval', '1h')
    interval_minutes = MonitoringService.INTERVALS.get(interval, 60)

    try:
        data = monitoring.historical(server_id, hours, interval_minutes)
        return jsonify({
            'success': True,
            'data': data,
            'meta': {
                'serverId': server_id,
                'hours': hours,
                'interval': interval,
                'dataPoints': len(data)
            }
        }), 200
    except Exception as e:
        app.logger.error(f"Historical metrics error: {str(e)}")
        return jsonify({'error': 'Failed to fetch historical metrics'}), 500

@app.route('/api/monitoring/status', methods=['GET'])
@admin_required
def get_server_status():
    server_id = request.args.get('server_id', MonitoringService.DEFAULT_SERVER_ID)
    status = monitoring.latest_status(server_id)
    if not status:
        return jsonify({'error': 'No status found for server'}), 404
    return jsonify({'success': True, 'data': status.to_dict()}), 200

@app.route('/api/monitoring/status', methods=['POST'])
@ingest_auth_required
def ingest_server_status():
    data = request.get_json(silent=True) or {}

    numbers = {}
    for field in ('db_size_mb', 'response_time_ms', 'error_rate_percent'):
        numbers[field] = parse_metric(data.get(field))
        if numbers[field] is None:
            return jsonify({'error': f'Invalid value for {field}'}), 400

    try:
        status = ServerStatus(
            server_id=sanitize_input(data.get('server_id') or MonitoringService.DEFAULT_SERVER_ID, max_length=100),
            database_status=sanitize_input(data.get('database_status') or 'unknown', max_length=20),
            db_connections_active=parse_int(data.get('db_connections_active'), 0),
            db_connections_max=parse_int(data.get('db_connections_max'), 100),
            db_size_mb=numbers['db_size_mb'],
            db_version=sanitize_input(data.get('db_version'), max_length=100),
            application_status=sanitize_input(data.get('application_status') or 'unknown', max_length=20),
            active_users=parse_int(data.get('active_users'), 0),
            response_time_ms=numbers['response_time_ms'],
            error_rate_percent=numbers['error_rate_percent'],
            requests_per_minute=parse_int(data.get('requests_per_minute'), 0),
            web_server_status=sanitize_input(data.get('web_server_status') or 'unknown', max_length=20),
            created_at=datetime.utcnow()
        )
        db.session.add(status)
        db.session.commit()
        return jsonify({'success': True, 'data': {'id': status.id}}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Insert server status error: {str(e)}")
        return jsonify({'error': 'Failed to insert server status'}), 500

def alert_notification_stats(unresolved_only=False):
    """{alert_id: (count, last created_at)}"""
    query = db.session.query(
        MonitoringNotification.alert_id,
        func.count(MonitoringNotification.id),
        func.max(MonitoringNotification.created_at)
    )
    if unresolved_only:
        query = query.filter(MonitoringNotification.resolved_at.is_(None))
    return {alert_id: (count, last) for alert_id, count, last in query.group_by(MonitoringNotification.alert_id).all()}

def validate_alert_fields(data, alert):
    """Apply alert fields from a request body; returns an error message or None"""
    if 'alert_name' in data:
        name = sanitize_input(data.get('alert_name'), max_length=200)
        if not name:
            return 'alert_name cannot be empty'
        alert.alert_name = name

    if 'alert_type' in data:
        if data['alert_type'] not in MonitoringService.ALERT_TYPES:
            return 'Invalid alert type'
        alert.alert_type = data['alert_type']

    if 'threshold_value' in data:
        value = parse_metric(data['threshold_value'], default=None)
        if value is None:
            return 'threshold_value must be a number'
        alert.threshold_value = value

    if 'threshold_operator' in data:
        if data['threshold_operator'] not in MonitoringService.OPERATORS:
            return 'Invalid threshold operator'
        alert.threshold_operator = data['threshold_operator']

    if 'severity' in data:
        if data['severity'] not in MonitoringService.SEVERITIES:
            return 'Invalid severity'
        alert.severity = data['severity']

    if 'notification_email' in data:
        email = data.get('notification_email')
        if email:
            try:
                email = validate_email(email, check_deliverability=False).normalized
            except EmailNotValidError:
                return 'Invalid notification email'
        alert.notification_email = email or None

    if 'notification_webhook' in data:
        webhook = sanitize_input(data.get('notification_webhook'), max_length=500)
        if webhook and not re.match(r'^https?://', webhook, re.IGNORECASE):
            return 'notification_webhook must be an http(s) URL'
        alert.notification_webhook = webhook or None

    if 'cooldown_minutes' in data:
        cooldown = parse_int(data['cooldown_minutes'])
        if cooldown is None or cooldown < 0:
            return 'cooldown_minutes must be zero or more'
        alert.cooldown_minutes = cooldown

    if 'is_enabled' in data:
        alert.is_enabled = parse_bool(data['is_enabled'])

    return None

@app.route('/api/monitoring/alerts', methods=['GET'])
@admin_required
def get_monitoring_alerts():
    active_only = request.args.get('active') == 'true'
    try:
        stats = alert_notification_stats(unresolved_only=active_only)
        if active_only:
            alerts = MonitoringAlert.query.filter_by(is_enabled=True).all()
            alerts.sort(key=lambda a: (-MonitoringAlert.SEVERITY_RANK.get(a.severity, 0), a.alert_name))
        else:
            alerts = MonitoringAlert.query.order_by(MonitoringAlert.created_at.desc(), MonitoringAlert.id.desc()).all()

        return jsonify({
            'success': True,
            'data': [a.to_dict(*stats.get(a.id, (0, None))) for a in alerts]
        }), 200
    except Exception as e:
        app.logger.error(f"Get monitoring alerts error: {str(e)}")
        return jsonify({'error': 'Failed to fetch monitoring alerts'}), 500

@app.route('/api/monitoring/alerts', methods=['POST'])
@admin_required
def create_monitoring_alert():
    data = request.get_json(silent=True) or {}

    required = ('alert_name', 'alert_type', 'threshold_value', 'threshold_operator')
    if any(data.get(field) in (None, '') for field in required):
        return jsonify({'error': 'Missing required alert fields'}), 400

    alert = MonitoringAlert(severity='warning', cooldown_minutes=15, is_enabled=True, trigger_count=0)
    error = validate_alert_fields(data, alert)
    if error:
        return jsonify({'error': error}), 400

    try:
        db.session.add(alert)
        db.session.commit()
        security_logger.log_admin_action(f'Created monitoring alert {alert.alert_name}', 'monitoring_alert', alert.id)
        return jsonify({'success': True, 'data': alert.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create monitoring alert error: {str(e)}")
        return jsonify({'error': 'Failed to create monitoring alert'}), 500

@app.route('/api/monitoring/alerts/<int:alert_id>', methods=['PUT'])
@admin_required
def update_monitoring_alert(alert_id):
    alert = db.session.get(MonitoringAlert, alert_id)
    if not alert:
        return jsonify({'error': 'Alert not found'}), 404

    data = request.get_json(silent=True) or {}
    error = validate_alert_fields(data, alert)
    if error:
        db.session.rollback()
        return jsonify({'error': error}), 400

    try:
        alert.updated_at = datetime.utcnow()
        db.session.commit()
        return jsonify({'success': True, 'data': alert.to_dict(*alert_notification_stats().get(alert.id, (0, None)))}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update monitoring alert error: {str(e)}")
        return jsonify({'error': 'Failed to update monitoring alert'}), 500

@app.route('/api/monitoring/alerts/<int:alert_id>', methods=['DELETE'])
@admin_required
def delete_monitoring_alert(alert_id):
    alert = db.session.get(MonitoringAlert, alert_id)
    if not alert:
        return jsonify({'error': 'Alert not found'}), 404

    try:
        MonitoringNotification.query.filter_by(alert_id=alert.id).delete(synchronize_session=False)
        db.session.delete(alert)
        db.session.commit()
        security_logger.log_admin_action(f'Deleted monitoring alert {alert_id}', 'monitoring_alert', alert_id)
        return jsonify({'success': True}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete monitoring alert error: {str(e)}")
        return jsonify({'error': 'Failed to delete monitoring alert'}), 500

@app.route('/api/monitoring/notifications', methods=['GET'])
@admin_required
def get_monitoring_notifications():
    server_id = request.args.get('server_id', MonitoringService.DEFAULT_SERVER_ID)
    limit = min(max(parse_int(request.args.get('limit'), 50), 1), 500)
    unread_only = request.args.get('unread') == 'true'

    try:
        query = MonitoringNotification.query.filter_by(server_id=server_id)
        if unread_only:
            query = query.filter(MonitoringNotification.resolved_at.is_(None))
        notifications = query.order_by(
            MonitoringNotification.created_at.desc(), MonitoringNotification.id.desc()
        ).limit(limit).all()
        return jsonify({'success': True, 'data': [n.to_dict() for n in notifications]}), 200
    except Exception as e:
        app.logger.error(f"Get monitoring notifications error: {str(e)}")
        return jsonify({'error': 'Failed to fetch notifications'}), 500

@app.route('/api/monitoring/notifications', methods=['PATCH'])
@admin_required
def update_monitoring_notifications():
    data = request.get_json(silent=True) or {}
    notification_ids = data.get('notification_ids')
    action = data.get('action')

    if not isinstance(notification_ids, list):
        return jsonify({'error': 'notification_ids must be an array'}), 400
    ids = [parse_int(i) for i in notification_ids]
    if any(i is None for i in ids):
        return jsonify({'error': 'notification_ids must contain integers'}), 400

    if action not in ('resolve', 'mark_sent'):
        return jsonify({'error': "Invalid action. Use 'resolve' or 'mark_sent'"}), 400

    try:
        if ids:
            query = MonitoringNotification.query.filter(MonitoringNotification.id.in_(ids))
            if action == 'resolve':
                query.filter(MonitoringNotification.resolved_at.is_(None)).update(
                    {'resolved_at': datetime.utcnow()}, synchronize_session=False)
            else:
                query.update({'notification_sent': True}, synchronize_session=False)
        db.session.commit()
        return jsonify({'success': True, 'message': f'Notifications {action}d successfully'}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update monitoring notifications error: {str(e)}")
        return jsonify({'error': 'Failed to update notifications'}), 500

# Earnings news
def parse_country_codes(value):
    """List of two-letter country codes, or None when malformed"""
    if value in (None, ''):
        return []
    if isinstance(value, str):
        value = [part for part in re.split(r'[\s,]+', value) if part]
    if not isinstance(value, list):
        return None
    codes = []
    for code in value:
        code = str(code).strip().upper()
        if not re.match(r'^[A-Z]{2}$', code):
            return None
        if code not in codes:
            codes.append(code)
    return codes

@app.route('/api/earnings-news', methods=['GET'])
def get_earnings_news():
    country = (request.args.get('country') or 'US').strip().upper()
    if not re.match(r'^[A-Z]{2}$', country):
        return jsonify({'error': 'country must be a two-letter code'}), 400

    page = max(parse_int(request.args.get('page'), 1), 1)
    limit = min(max(parse_int(request.args.get('limit'), 5), 1), 50)

    try:
        query = EarningsNews.query.filter(
            EarningsNews.is_published.is_(True),
            or_(
                EarningsNews.countries.is_(None),
                EarningsNews.countries == '',
                EarningsNews.countries == '[]',
                EarningsNews.countries.like(f'%"{country}"%')
            )
        )
        pagination = query.order_by(
            EarningsNews.published_at.desc(), EarningsNews.id.desc()
        ).paginate(page=page, per_page=limit, error_out=False)

        return jsonify({
            'news': [n.to_dict() for n in pagination.items],
            'pagination': {
                'page': page,
                'limit': limit,
                'total': pagination.total,
                'totalPages': pagination.pages,
                'hasNext': page < pagination.pages,
                'hasPrev': page > 1
            }
        }), 200
    except Exception as e:
        app.logger.error(f"Get earnings news error: {str(e)}")
        return jsonify({'error': 'Failed to fetch earnings news'}), 500

def apply_news_fields(news, data):
    """Returns an error message or None"""
    if 'title' in data:
        title = sanitize_input(data.get('title'), max_length=200)
        if not title:
            return 'Title is required'
        news.title = title
    for field, max_length in (('summary', 1000), ('content', 20000)):
        if field in data:
            setattr(news, field, sanitize_input(data.get(field), max_length=max_length))
    for field in ('image_url', 'source_url'):
        if field in data:
            url = sanitize_input(data.get(field), max_length=500)
            if url and not re.match(r'^https?://', url, re.IGNORECASE):
                return f'{field} must be an http(s) URL'
            setattr(news, field, url or None)
    if 'amount' in data:
        if data['amount'] is None:
            news.amount = None
        else:
            amount = parse_amount(data['amount'])
            if amount is None or amount < 0:
                return 'amount must be zero or more'
            news.amount = amount
    if 'currency' in data:
        currency = str(data.get('currency') or '').strip().upper()
        if not re.match(r'^[A-Z]{3}$', currency):
            return 'currency must be a three-letter code'
        news.currency = currency
    if 'countries' in data:
        codes = parse_country_codes(data.get('countries'))
        if codes is None:
            return 'countries must be a list of two-letter codes'
        news.countries = json.dumps(codes)
    if 'is_published' in data:
        news.is_published = parse_bool(data['is_published'])
    return None

@app.route('/api/admin/earnings-news', methods=['POST'])
@admin_required
def create_earnings_news():
    data = request.get_json(silent=True) or {}
    if not data.get('title'):
        return jsonify({'error': 'Title is required'}), 400

    news = EarningsNews(created_by=session['user_id'], currency='USD', is_published=True,
                        published_at=datetime.utcnow())
    error = apply_news_fields(news, data)
    if error:
        return jsonify({'error': error}), 400

    try:
        db.session.add(news)
        db.session.commit()
        return jsonify({'message': 'News created', 'news': news.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create earnings news error: {str(e)}")
        return jsonify({'error': 'Failed to create news'}), 500

@app.route('/api/admin/earnings-news/<int:news_id>', methods=['PUT'])
@admin_required
def update_earnings_news(news_id):
    news = db.session.get(EarningsNews, news_id)
    if not news:
        return jsonify({'error': 'News not found'}), 404

    error = apply_news_fields(news, request.get_json(silent=True) or {})
    if error:
        db.session.rollback()
        return jsonify({'error': error}), 400

    try:
        db.session.commit()
        return jsonify({'message': 'News updated', 'news': news.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update earnings news error: {str(e)}")
        return jsonify({'error': 'Failed to update news'}), 500

@app.route('/api/admin/earnings-news/<int:news_id>', methods=['DELETE'])
@admin_required
def delete_earnings_news(news_id):
    news = db.session.get(EarningsNews, news_id)
    if not news:
        return jsonify({'error': 'News not found'}), 404

    try:
        db.session.delete(news)
        db.session.commit()
        return jsonify({'success': True}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete earnings news error: {str(e)}")
        return jsonify({'error': 'Failed to delete news'}), 500

# In-app notifications
@app.route('/api/notifications')
@login_required
def get_notifications():
    """Get user notifications"""
    user_id = session['user_id']
    unread_only = request.args.get('unread_only', 'false').lower() == 'true'
    limit = min(max(parse_int(request.args.get('limit'), 20), 1), 100)

    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter_by(is_read=False)

    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    unread_count = Notification.query.filter_by(user_id=user_id, is_read=False).count()

    return jsonify({
        'notifications': [n.to_dict() for n in notifications],
        'unread_count': unread_count
    })

@app.route('/api/notifications/mark-read', methods=['POST'])
@login_required
def mark_notifications_read():
    """Mark the given notifications, or all of them, as read"""
    user_id = session['user_id']
    data = request.get_json(silent=True) or {}
    notification_ids = data.get('ids') or []

    try:
        query = Notification.query.filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        if notification_ids:
            query = query.filter(Notification.id.in_(notification_ids))
        query.update({'is_read': True, 'read_at': datetime.utcnow()}, synchronize_session=False)
        db.session.commit()
        return jsonify({'success': True})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Mark notifications read error: {str(e)}")
        return jsonify({'error': 'Failed to update notifications'}), 500

# Database initialization
DEFAULT_CATEGORIES = [
    ('Data Entry', 'data-entry', 'Copy typing, spreadsheet work, form filling', 'clipboard'),
    ('Social Media', 'social-media', 'Follows, shares, comments and short posts', 'share'),
    ('Writing', 'writing', 'Short articles, reviews, product descriptions', 'edit'),
    ('Design', 'design', 'Logos, banners, thumbnails', 'palette'),
    ('Testing', 'testing', 'App and website testing, bug reports', 'bug'),
    ('Surveys', 'surveys', 'Surveys, polls and research tasks', 'check-square'),
    ('Video & Audio', 'video-audio', 'Transcription, short edits, voice-overs', 'video'),
    ('Other', 'other', 'Everything else', 'briefcase'),
]

def seed_defaults():
    """Insert default categories, fee schedules and the configured admin account"""
    if Category.query.count() == 0:
        for name, slug, description, icon in DEFAULT_CATEGORIES:
            db.session.add(Category(name=name, slug=slug, description=description, icon=icon))
        db.session.commit()
        app.logger.info("Default categories added")

    for fee_type, values in DEFAULT_FEE_SETTINGS.items():
        if not get_fee_setting(fee_type):
            db.session.add(FeeSetting(fee_type=fee_type, is_active=True, **values))
    db.session.commit()

    admin_email = os.environ.get('ADMIN_EMAIL')
    admin_password = os.environ.get('ADMIN_PASSWORD')
    if admin_email and admin_password and not User.query.filter_by(is_admin=True).first():
        admin_user = User(
            username=os.environ.get('ADMIN_USERNAME', 'admin'),
            email=admin_email.lower(),
            password_hash=generate_password_hash(admin_password),
            is_admin=True,
            is_verified=True
        )
        db.session.add(admin_user)
        db.session.flush()
        get_or_create_wallet(admin_user.id)
        db.session.commit()
        app.logger.info(f"Admin account {admin_email} created")

_db_initialized = False

def init_database():
    """Create tables and seed defaults once per process"""
    global _db_initialized
    if _db_initialized:
        return

    try:
        db.create_all()
        seed_defaults()
        _db_initialized = True
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Database initialization error: {str(e)}")

with app.app_context():
    init_database()

if os.environ.get('ENABLE_SCHEDULER', 'false').lower() == 'true':
    from scheduled_jobs import init_scheduler
    scheduler = init_scheduler(app, sweep_expired_work_proofs, monitoring)

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
