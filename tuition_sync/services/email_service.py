"""
tuition_sync/services/email_service.py
Payment receipt emails using SendGrid
"""
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from tuition_sync.core.config import settings
import logging

logger = logging.getLogger(__name__)

class EmailService:
    """Sends receipts for recorded payments; logs only when SendGrid is not configured"""

    def __init__(self, api_key: str = None):
        api_key = settings.SENDGRID_API_KEY if api_key is None else api_key
        if api_key:
            self.sg = SendGridAPIClient(api_key)
        else:
            self.sg = None
            logger.warning("SendGrid API key not configured. Receipts will be logged only.")

        self.from_email = settings.FROM_EMAIL
        self.from_name = settings.FROM_NAME

    async def send_email(self, to_email: str, subject: str, html_content: str) -> bool:
        """
        Send email via SendGrid

        Args:
            to_email: Recipient email address
            subject: Email subject
            html_content: HTML content of email

        Returns:
            bool: True if sent (or logged), False if SendGrid rejected it
        """
        if not self.sg:
            logger.info(f"[EMAIL] To: {to_email} | Subject: {subject}")
            logger.debug(f"[EMAIL] Content: {html_content}")
            return True

        try:
            message = Mail(
                from_email=(self.from_email, self.from_name),
                to_emails=to_email,
                subject=subject,
                html_content=html_content
            )

            response = self.sg.send(message)
            logger.info(f"Email sent to {to_email}: {response.status_code}")
            return True

        except Exception as e:
            # A receipt that fails to send never undoes the recorded payment
            logger.error(f"Email send failed to {to_email}: {e}")
            return False

    async def send_payment_receipt(self, to_email: str, name: str, payment, fee_record) -> bool:
        """Receipt for one recorded payment, with the balance after it"""
        period = f"{payment.period_month:02d}/{payment.period_year}"
        method = payment.method.value.replace("_", " ").title()
        html_content = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h2 style="color: #333;">Payment Received</h2>
            <p>Dear {name},</p>
            <p>We have recorded the following payment:</p>
            <div style="background-color: #f5f5f5; padding: 15px; border-radius: 5px; margin: 20px 0;">
                <p><strong>Transaction:</strong> {payment.transaction_no or payment.payment_id}</p>
                <p><strong>Period:</strong> {period}</p>
                <p><strong>Amount:</strong> {payment.amount}</p>
                <p><strong>Method:</strong> {method}</p>
                <p><strong>Receipt No:</strong> {payment.receipt_no or '-'}</p>
            </div>
            <p><strong>Total fee:</strong> {fee_record.total_fee}<br>
               <strong>Paid to date:</strong> {fee_record.paid_fee}<br>
               <strong>Pending:</strong> {fee_record.pending_fee}</p>
            <hr style="border: none; border-top: 1px solid #ddd; margin: 20px 0;">
            <p style="color: #666; font-size: 12px;">
                This is an automated email from {settings.PROJECT_NAME}. Please do not reply.
            </p>
        </div>
        """
        return await self.send_email(to_email, f"Payment receipt for {period}", html_content)
