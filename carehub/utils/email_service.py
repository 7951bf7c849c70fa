"""
Transactional mail over SMTP.

Every sender returns True/False and never raises, so it can run
from a BackgroundTask after the response is already sent.
"""
import os
import smtplib
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger(__name__)

# ==================== CONFIG ====================

MAIL_HOST = os.getenv("MAIL_HOST", "")
MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
MAIL_USER = os.getenv("MAIL_USER", "")
MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
MAIL_FROM = os.getenv("MAIL_FROM", "CareHub <no-reply@carehub.local>")
MAIL_TIMEOUT_SECONDS = 15


def send_email(to: str, subject: str, html: str, text: Optional[str] = None) -> bool:
    if not MAIL_HOST:
        logger.info("Mail transport not configured, skipping '%s' to %s", subject, to)
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = MAIL_FROM
    msg["To"] = to
    if text:
        msg.attach(MIMEText(text, "plain"))
    msg.attach(MIMEText(html, "html"))

    try:
        with smtplib.SMTP(MAIL_HOST, MAIL_PORT, timeout=MAIL_TIMEOUT_SECONDS) as server:
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
            if MAIL_USER:
                server.login(MAIL_USER, MAIL_PASSWORD)
            server.sendmail(MAIL_FROM, [to], msg.as_string())
        logger.info("Email sent: '%s' to %s", subject, to)
        return True
    except smtplib.SMTPAuthenticationError:
        logger.error("SMTP authentication failed for %s", MAIL_USER)
        return False
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email error for %s: %s", to, e)
        return False


def send_appointment_confirmation(
    patient_email: str,
    patient_name: str,
    doctor_name: str,
    date: str,
    time: str,
    fee
) -> bool:
    html = f"""
    <h2>Appointment Confirmed</h2>
    <p>Dear {patient_name},</p>
    <p>Your appointment has been confirmed with the following details:</p>
    <ul>
      <li><strong>Doctor:</strong> {doctor_name}</li>
      <li><strong>Date:</strong> {date}</li>
      <li><strong>Time:</strong> {time}</li>
      <li><strong>Consultation Fee:</strong> ₹{fee}</li>
    </ul>
    <p>Please arrive 10 minutes before your scheduled time.</p>
    """
    return send_email(
        to=patient_email,
        subject="Appointment Confirmation",
        html=html,
        text=f"Appointment confirmed with {doctor_name} on {date} at {time}"
    )


def send_order_confirmation(
    customer_email: str,
    customer_name: str,
    order_number: str,
    items: list,
    total
) -> bool:
    items_list = "".join(
        f"<li>{item['medicine_name']} x {item['quantity']} - ₹{item['price']}</li>"
        for item in items
    )
    html = f"""
    <h2>Order Confirmed</h2>
    <p>Dear {customer_name},</p>
    <p>Your order #{order_number} has been confirmed.</p>
    <h3>Order Details:</h3>
    <ul>{items_list}</ul>
    <p><strong>Total Amount:</strong> ₹{total}</p>
    """
    return send_email(
        to=customer_email,
        subject=f"Order Confirmation - {order_number}",
        html=html,
        text=f"Order {order_number} confirmed. Total: {total}"
    )
