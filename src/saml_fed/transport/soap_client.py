"""SOAP client for back-channel single logout.

Sends a SOAP 1.1 envelope by HTTP POST and returns the reply body. There is
no retry: a failed send raises TransportFailure and the caller decides
whether to try again.
"""

import logging
import time
from typing import Optional

import requests

from ..logging_audit.audit import MESSAGE_SENT, SEND_FAILED, log_audit_event
from ..utils.exceptions import TransportFailure
from .http_client import ConnectionPool

logger = logging.getLogger(__name__)

SOAP_ACTION = "http://www.oasis-open.org/committees/security"

SOAP_HEADERS = {
    "SOAPAction": SOAP_ACTION,
    "Content-Type": "text/xml; charset=utf-8",
    "Cache-Control": "no-cache, no-store",
    "Pragma": "no-cache",
}


class SoapLogoutClient:
    """Send SOAP-bound logout messages.

    Attributes:
        pool: Connection pool providing the HTTP session

    Example:
        >>> client = SoapLogoutClient(ConnectionPool())
        >>> reply = client.send("https://idp.example.com/slo/soap", envelope)
    """

    def __init__(self, pool: Optional[ConnectionPool] = None) -> None:
        self.pool = pool or ConnectionPool()

    def send(self, url: str, envelope: str, message_id: Optional[str] = None) -> str:
        """POST a SOAP envelope and return the response body.

        Args:
            url: SOAP endpoint URL
            envelope: Complete SOAP envelope XML
            message_id: ID of the enclosed message, for the audit trail

        Returns:
            Response body text

        Raises:
            TransportFailure: On connection errors, timeouts or a non-2xx status
        """
        if url.startswith("http://"):
            logger.warning(
                f"SECURITY WARNING: Sending SOAP logout over plain HTTP to {url}"
            )

        start_time = time.time()
        logger.info(f"Sending SOAP logout message {message_id or ''} to {url}")

        try:
            response = self.pool.get_session().post(
                url,
                data=envelope.encode("utf-8"),
                headers=SOAP_HEADERS,
                timeout=self.pool.config.timeout,
            )
        except requests.RequestException as e:
            self._audit_failure(url, message_id, str(e))
            raise TransportFailure(f"SOAP send to {url} failed: {e}", url=url) from e

        duration = time.time() - start_time

        if not 200 <= response.status_code < 300:
            reason = f"HTTP {response.status_code}"
            self._audit_failure(url, message_id, reason)
            raise TransportFailure(
                f"SOAP send to {url} failed: {reason}",
                url=url,
                status_code=response.status_code,
            )

        log_audit_event(
            MESSAGE_SENT,
            {
                "status": "success",
                "message_id": message_id,
                "binding": "SOAP",
                "duration": duration,
            },
        )
        return response.text

    def _audit_failure(self, url: str, message_id: Optional[str], reason: str) -> None:
        logger.error(f"SOAP send to {url} failed: {reason}")
        log_audit_event(
            SEND_FAILED,
            {
                "status": "failure",
                "message_id": message_id,
                "binding": "SOAP",
                "reason": reason,
            },
        )
