"""
HTTP client for Google reCAPTCHA verification
"""
import httpx
from opentelemetry import trace
import logging

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RecaptchaClient:
    """Verifies reCAPTCHA tokens submitted with the registration form"""

    def __init__(self, secret_key: str, verify_url: str = "https://www.google.com/recaptcha/api/siteverify", transport=None):
        self.secret_key = secret_key
        self.verify_url = verify_url
        self.client = httpx.AsyncClient(timeout=10.0, transport=transport)

    async def verify(self, token: str) -> bool:
        """
        Check a token with Google

        Returns:
            True if Google accepted the token, False otherwise
        """
        with tracer.start_as_current_span("recaptcha.verify") as span:
            try:
                response = await self.client.post(
                    self.verify_url,
                    data={"secret": self.secret_key, "response": token},
                )
                span.set_attribute("http.status_code", response.status_code)

                if response.status_code != 200:
                    logger.error(f"reCAPTCHA verification error: {response.status_code}")
                    return False

                success = bool(response.json().get("success"))
                span.set_attribute("recaptcha.success", success)
                return success

            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"reCAPTCHA verification error: {e}")
                span.record_exception(e)
                return False

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()
