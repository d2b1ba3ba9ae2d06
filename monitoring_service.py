"""
Server Health Monitoring Service
Latest/historical metric views and threshold alert evaluation
"""

import operator
from datetime import datetime, timedelta
from typing import List, Dict, Optional
import logging

import requests

logger = logging.getLogger(__name__)


class MonitoringService:
    """
    Evaluates alert thresholds against incoming server metrics and shapes
    metric history for the monitoring dashboard.
    """

    ALERT_TYPES = ('cpu', 'memory', 'disk', 'network', 'service')
    SEVERITIES = ('info', 'warning', 'critical')
    OPERATORS = {
        '>': operator.gt,
        '>=': operator.ge,
        '<': operator.lt,
        '<=': operator.le,
        '=': operator.eq,
    }
    INTERVALS = {'5m': 5, '15m': 15, '30m': 30, '1h': 60}
    DEFAULT_SERVER_ID = 'main-server'
    WEBHOOK_TIMEOUT = 5

    def __init__(self, db, ServerMetric, ServerStatus, MonitoringAlert, MonitoringNotification, email_service):
        """
        Args:
            db: SQLAlchemy database instance
            ServerMetric: ServerMetric model class
            ServerStatus: ServerStatus model class
            MonitoringAlert: MonitoringAlert model class
            MonitoringNotification: MonitoringNotification model class
            email_service: EmailService instance used for alert emails
        """
        self.db = db
        self.ServerMetric = ServerMetric
        self.ServerStatus = ServerStatus
        self.MonitoringAlert = MonitoringAlert
        self.MonitoringNotification = MonitoringNotification
        self.email_service = email_service

    def latest_metrics(self, server_id: str):
        return self.ServerMetric.query.filter_by(server_id=server_id).order_by(
            self.ServerMetric.timestamp.desc(), self.ServerMetric.id.desc()
        ).first()

    def latest_status(self, server_id: str):
        return self.ServerStatus.query.filter_by(server_id=server_id).order_by(
            self.ServerStatus.created_at.desc(), self.ServerStatus.id.desc()
        ).first()

    @staticmethod
    def bucket_start(timestamp: datetime, interval_minutes: int) -> datetime:
        """Floor a timestamp to the start of its interval within the hour"""
        minute = (timestamp.minute // interval_minutes) * interval_minutes if interval_minutes < 60 else 0
        return timestamp.replace(minute=minute, second=0, microsecond=0)

    def historical(self, server_id: str, hours: int, interval_minutes: int, now: datetime = None) -> List[Dict]:
        """
        Average metrics per time bucket over the last ``hours`` hours.

        Returns:
            List of {timestamp, cpu, memory, disk, network}, oldest first, each
            value rounded to one decimal (0 when no sample carried it)
        """
        now = now or datetime.utcnow()
        since = now - timedelta(hours=hours)

        rows = self.ServerMetric.query.filter(
            self.ServerMetric.server_id == server_id,
            self.ServerMetric.timestamp >= since
        ).order_by(self.ServerMetric.timestamp.asc()).all()

        buckets = {}
        for row in rows:
            key = self.bucket_start(row.timestamp, interval_minutes)
            bucket = buckets.setdefault(key, {'cpu': [], 'memory': [], 'disk': [], 'network': []})
            if row.cpu_usage_percent is not None:
                bucket['cpu'].append(row.cpu_usage_percent)
            if row.memory_usage_percent is not None:
                bucket['memory'].append(row.memory_usage_percent)
            if row.disk_usage_percent is not None:
                bucket['disk'].append(row.disk_usage_percent)
            bucket['network'].append((row.network_upload_mbps or 0) + (row.network_download_mbps or 0))

        def average(values):
            return round(sum(values) / len(values), 1) if values else 0

        return [
            {
                'timestamp': key.isoformat(),
                'cpu': average(values['cpu']),
                'memory': average(values['memory']),
                'disk': average(values['disk']),
                'network': average(values['network'])
            }
            for key, values in sorted(buckets.items())
        ]

    def metric_value(self, alert_type: str, metric, status=None) -> Optional[float]:
        """Current value an alert of the given type compares against its threshold"""
        if alert_type == 'cpu':
            return metric.cpu_usage_percent
        if alert_type == 'memory':
            return metric.memory_usage_percent
        if alert_type == 'disk':
            return metric.disk_usage_percent
        if alert_type == 'network':
            return (metric.network_upload_mbps or 0) + (metric.network_download_mbps or 0)
        if alert_type == 'service':
            return status.error_rate_percent if status is not None else None
        return None

    def in_cooldown(self, alert, now: datetime) -> bool:
        if not alert.last_triggered_at:
            return False
        return alert.last_triggered_at + timedelta(minutes=alert.cooldown_minutes or 0) > now

    def check_alerts(self, server_id: str, metric, now: datetime = None) -> List:
        """
        Compare every enabled alert with the newest sample for ``server_id``.

        A breach outside the alert's cooldown opens a notification and is
        dispatched by email/webhook. When the condition clears, the alert's open
        notifications for this server are resolved.

        Returns:
            Notifications created by this check
        """
        now = now or datetime.utcnow()
        status = self.latest_status(server_id)
        created = []

        alerts = self.MonitoringAlert.query.filter_by(is_enabled=True).all()
        for alert in alerts:
            compare = self.OPERATORS.get(alert.threshold_operator)
            value = self.metric_value(alert.alert_type, metric, status)
            if compare is None or value is None:
                continue

            if compare(value, alert.threshold_value):
                if self.in_cooldown(alert, now):
                    continue

                notification = self.MonitoringNotification(
                    alert_id=alert.id,
                    server_id=server_id,
                    alert_message=(
                        f"{alert.alert_name}: {alert.alert_type} is {value:.1f} "
                        f"({alert.threshold_operator} {alert.threshold_value:g})"
                    ),
                    metric_value=value,
                    threshold_value=alert.threshold_value,
                    created_at=now
                )
                self.db.session.add(notification)
                alert.trigger_count = (alert.trigger_count or 0) + 1
                alert.last_triggered_at = now
                created.append((alert, notification))
            else:
                self.MonitoringNotification.query.filter(
                    self.MonitoringNotification.alert_id == alert.id,
                    self.MonitoringNotification.server_id == server_id,
                    self.MonitoringNotification.resolved_at.is_(None)
                ).update({'resolved_at': now}, synchronize_session=False)

        self.db.session.commit()

        for alert, notification in created:
            logger.warning(f"Alert triggered on {server_id}: {notification.alert_message}")
            self.dispatch(alert, notification)

        if created:
            self.db.session.commit()

        return [notification for _, notification in created]

    def dispatch(self, alert, notification):
        """Send a notification through the channels configured on its alert"""
        methods = []

        if alert.notification_email:
            success, message = self.email_service.send_alert_email(
                alert.notification_email,
                alert.alert_name,
                alert.severity,
                notification.alert_message,
                notification.server_id
            )
            if success:
                methods.append('email')
            else:
                logger.warning(f"Alert email for {alert.alert_name} not sent: {message}")

        if alert.notification_webhook:
            payload = {
                'alert_id': alert.id,
                'alert_name': alert.alert_name,
                'alert_type': alert.alert_type,
                'severity': alert.severity,
                'server_id': notification.server_id,
                'message': notification.alert_message,
                'metric_value': notification.metric_value,
                'threshold_value': notification.threshold_value,
                'created_at': notification.created_at.isoformat() if notification.created_at else None
            }
            try:
                response = requests.post(
                    alert.notification_webhook,
                    json=payload,
                    timeout=self.WEBHOOK_TIMEOUT,
                    headers={'Content-Type': 'application/json'}
                )
                if 200 <= response.status_code < 300:
                    methods.append('webhook')
                else:
                    logger.warning(f"Alert webhook returned {response.status_code} for {alert.alert_name}")
            except requests.exceptions.RequestException as e:
                logger.warning(f"Alert webhook failed for {alert.alert_name}: {e}")

        if methods:
            notification.notification_sent = True
            notification.notification_method = ','.join(methods)

    def purge_metrics(self, retention_days: int, now: datetime = None) -> int:
        """Delete metric samples older than the retention window"""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=retention_days)
        deleted = self.ServerMetric.query.filter(
            self.ServerMetric.timestamp < cutoff
        ).delete(synchronize_session=False)
        self.db.session.commit()
        return deleted
