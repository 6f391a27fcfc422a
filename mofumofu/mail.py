"""Outgoing email over SMTP (password reset links)."""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from urllib.parse import urlencode

logger = logging.getLogger(__name__)


class Mailer:
    def __init__(self, server, port, sender, username=None, password=None, use_tls=True,
                 reset_url="mofumofu://reset-password", timeout=10):
        self.server = server
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.reset_url = reset_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings):
        """None when no SMTP server is configured."""
        if not settings.mail_server:
            return None
        return cls(
            settings.mail_server,
            settings.mail_port,
            settings.mail_sender,
            username=settings.mail_username or None,
            password=settings.mail_password or None,
            use_tls=settings.mail_use_tls,
            reset_url=settings.reset_url,
        )

    def send(self, to, subject, html_content):
        """Returns True when the server accepted the message."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.attach(MIMEText(html_content, "html"))

        try:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.sender, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error sending email to %s: %s", to, e)
            return False
        return True

    def send_password_reset(self, to, token):
        link = f"{self.reset_url}?{urlencode({'token': token})}"
        html_content = f"""
        <html>
            <body style="font-family: Arial, sans-serif; color: #333; line-height: 1.6;">
                <h2>Reset your mofumofu password</h2>
                <p>Someone asked to reset the password for this account.</p>
                <p><a href="{link}">Choose a new password</a></p>
                <p>The link works once and expires in one hour.</p>
                <p>If this wasn't you, you can ignore this email.</p>
            </body>
        </html>
        """
        return self.send(to, "mofumofu - Password reset", html_content)
