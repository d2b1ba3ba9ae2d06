"""SendGrid Email Service for monitoring alert emails"""
import os
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, To
from flask import current_app


class EmailService:
    """Service for sending emails via SendGrid"""

    def __init__(self):
        self.api_key = os.environ.get('SENDGRID_API_KEY')
        self.from_email = os.environ.get('SENDGRID_FROM_EMAIL')

    def is_configured(self):
        """Check if SendGrid is properly configured"""
        return bool(self.api_key and self.from_email)

    def send_email(self, recipients, subject, html_content, text_content=None):
        """
        Send one email per recipient so addresses are never exposed to each other.

        Args:
            recipients: List of email addresses or list of (email, name) tuples
            subject: Email subject
            html_content: HTML email body
            text_content: Plain text email body (optional)

        Returns:
            tuple: (success: bool, message: str)
        """
        if not self.is_configured():
            return False, "SendGrid is not configured. Set SENDGRID_API_KEY and SENDGRID_FROM_EMAIL."

        if not recipients:
            return False, "No recipients specified."

        normalized = []
        for recipient in recipients:
            if isinstance(recipient, tuple):
                normalized.append(recipient)
            else:
                normalized.append((recipient, None))

        sent = 0
        failed = []
        sg = SendGridAPIClient(self.api_key)

        for email, name in normalized:
            try:
                message = Mail(
                    from_email=self.from_email,
                    to_emails=To(email=email, name=name) if name else email,
                    subject=subject,
                    plain_text_content=text_content,
                    html_content=html_content
                )
                response = sg.send(message)

                if 200 <= response.status_code < 300:
                    sent += 1
                else:
                    failed.append(email)
                    current_app.logger.warning(f"Non-success status {response.status_code} for {email}")

            except Exception as e:
                failed.append(email)
                current_app.logger.error(f"Error sending email to {email}: {str(e)}")

        if not failed:
            return True, f"Email sent to {sent} recipient(s)."
        if sent:
            message = f"Email sent to {sent}/{len(normalized)} recipients. Failed: {', '.join(failed[:5])}"
            current_app.logger.warning(message)
            return True, message

        message = f"Failed to send email to all {len(normalized)} recipients."
        current_app.logger.error(message)
        return False, message

    def send_alert_email(self, to_email, alert_name, severity, message, server_id):
        """Send a monitoring alert to a single address"""
        subject = f"[{severity.upper()}] {alert_name} on {server_id}"
        html_content = (
            f"<h2>{alert_name}</h2>"
            f"<p><strong>Server:</strong> {server_id}<br>"
            f"<strong>Severity:</strong> {severity}</p>"
            f"<p>{message}</p>"
        )
        text_content = f"{alert_name} ({severity}) on {server_id}: {message}"
        return self.send_email([to_email], subject, html_content, text_content)


# Global instance
email_service = EmailService()
