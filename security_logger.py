"""
Audit Trail Logging Service
Records authentication, admin and money-movement events to the database and
to a rotating structured log file
"""
import json
import logging
import logging.handlers
import os
from flask import request, session, has_request_context
from typing import Optional, Dict, Any


class SecurityLogger:
    """
    Centralized audit logging with a database trail and JSON log files
    """

    def __init__(self, app=None, db=None, AuditLog=None, User=None):
        self.app = app
        self.db = db
        self.AuditLog = AuditLog
        self.User = User
        self.logger = None

        if app:
            self.init_app(app, db, AuditLog, User)

    def init_app(self, app, db, AuditLog, User):
        """Initialize audit logger with Flask app"""
        self.app = app
        self.db = db
        self.AuditLog = AuditLog
        self.User = User
        self._setup_structured_logging()

    def _setup_structured_logging(self):
        """Configure JSON-formatted audit logs with file rotation"""
        log_dir = self.app.config.get('LOG_DIR') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'logs'
        )
        os.makedirs(log_dir, exist_ok=True)

        self.logger = logging.getLogger('audit')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        # Drop handlers left by a previous init
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}'
        )

        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'security.log'),
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(json_formatter)
        self.logger.addHandler(file_handler)

        if self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        """Extract caller details from the current request, if any"""
        context = {
            'ip_address': None,
            'user_agent': None,
            'request_method': None,
            'request_path': None,
            'username': None,
            'user_id': None
        }

        if not has_request_context():
            return context

        context['ip_address'] = request.headers.get('X-Forwarded-For', request.remote_addr)
        if context['ip_address'] and ',' in context['ip_address']:
            context['ip_address'] = context['ip_address'].split(',')[0].strip()

        context['user_agent'] = request.headers.get('User-Agent', '')
        context['request_method'] = request.method
        context['request_path'] = request.path

        context['user_id'] = session.get('user_id')
        if context['user_id'] and self.User is not None:
            user = self.db.session.get(self.User, context['user_id'])
            if user:
                context['username'] = user.username

        return context

    def log_event(
        self,
        event_category: str,
        event_type: str,
        action: str,
        severity: str = 'medium',
        status: str = 'success',
        message: str = '',
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict] = None,
        user_id: Optional[int] = None,
        username: Optional[str] = None
    ):
        """
        Write an audit event to the database and the structured log.

        Args:
            event_category: authentication, authorization, admin, financial or system
            event_type: Specific event type (login_success, withdrawal_requested, ...)
            action: Human-readable action description
            severity: low, medium, high or critical
            status: success, failure or blocked
            resource_type: Type of resource affected (user, microjob, escrow, ...)
            resource_id: ID of affected resource
            details: Additional context
            user_id: Override user ID (background jobs have no session)
            username: Override username
        """
        try:
            context = self._get_request_context()

            if user_id:
                context['user_id'] = user_id
            if username:
                context['username'] = username

            audit_log = self.AuditLog(
                event_category=event_category,
                event_type=event_type,
                severity=severity,
                user_id=context['user_id'],
                username=context['username'],
                ip_address=context['ip_address'],
                user_agent=context['user_agent'],
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                status=status,
                message=message,
                details=json.dumps(details) if details else None,
                request_method=context['request_method'],
                request_path=context['request_path']
            )
            self.db.session.add(audit_log)
            self.db.session.commit()

            log_data = {
                'event_category': event_category,
                'event_type': event_type,
                'severity': severity,
                'user_id': context['user_id'],
                'username': context['username'],
                'ip_address': context['ip_address'],
                'action': action,
                'resource_type': resource_type,
                'resource_id': resource_id,
                'status': status,
                'message': message,
                'details': details
            }

            log_level = {
                'low': logging.INFO,
                'medium': logging.WARNING,
                'high': logging.ERROR,
                'critical': logging.CRITICAL
            }.get(severity, logging.INFO)

            self.logger.log(log_level, json.dumps(log_data, default=str))

        except Exception as e:
            self.db.session.rollback()
            self.app.logger.error(f"Audit logging failed: {e}")
            self.app.logger.error(f"Event: {event_category}/{event_type} - {action}")

    def log_authentication(self, event_type: str, username: str, status: str, message: str = '', **kwargs):
        """Log authentication event"""
        severity = 'high' if status == 'failure' else 'low'
        self.log_event(
            event_category='authentication',
            event_type=event_type,
            action=f"User authentication: {event_type}",
            severity=severity,
            status=status,
            message=message,
            username=username,
            **kwargs
        )

    def log_authorization(self, resource_type: str, resource_id, action: str, status: str, **kwargs):
        """Log authorization event"""
        severity = 'high' if status == 'blocked' else 'medium'
        self.log_event(
            event_category='authorization',
            event_type='permission_check',
            action=action,
            severity=severity,
            status=status,
            resource_type=resource_type,
            resource_id=resource_id,
            **kwargs
        )

    def log_admin_action(self, action: str, resource_type: str, resource_id, details: Dict = None, **kwargs):
        """Log admin operation"""
        self.log_event(
            event_category='admin',
            event_type='admin_operation',
            action=action,
            severity='high',
            status='success',
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            **kwargs
        )

    def log_financial(self, event_type: str, action: str, amount: float, resource_type: str, resource_id, **kwargs):
        """Log money movement"""
        self.log_event(
            event_category='financial',
            event_type=event_type,
            action=action,
            severity='high',
            resource_type=resource_type,
            resource_id=resource_id,
            details={'amount': amount},
            **kwargs
        )


# Global instance (will be initialized in app.py)
security_logger = None


def init_security_logger(app, db, AuditLog, User):
    """Initialize global audit logger instance"""
    global security_logger
    security_logger = SecurityLogger(app, db, AuditLog, User)
    app.extensions['security_logger'] = security_logger
    return security_logger
