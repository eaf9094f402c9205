"""Thin SMS sender over the Twilio REST API."""
import re

import requests
from flask import current_app

from utils.errors import DependencyError

PHONE_PATTERN = re.compile(r"^[0-9+\-\s()]+$")


class SMSDeliveryError(DependencyError):
    """Raised when the SMS gateway rejects or cannot receive a message."""

    def __init__(self, message: str) -> None:
        super().__init__(message, dependency="sms")


def sms_configured() -> bool:
    cfg = current_app.config
    return bool(cfg.get("SMS_ACCOUNT_SID") and cfg.get("SMS_AUTH_TOKEN") and cfg.get("SMS_FROM_NUMBER"))


def normalize_number(number: str) -> str:
    digits = re.sub(r"[^0-9+]", "", number or "")
    # Local mobile numbers (09XXXXXXXXX) to E.164.
    if digits.startswith("09") and len(digits) == 11:
        digits = "+63" + digits[1:]
    return digits


def send_sms(to_number: str, body: str) -> str:
    """Send ``body`` and return the gateway message id."""
    if not sms_configured():
        raise SMSDeliveryError("SMS gateway is not configured")
    if not to_number or not PHONE_PATTERN.match(to_number):
        raise SMSDeliveryError("Invalid destination number")

    cfg = current_app.config
    url = f"{cfg['SMS_API_BASE'].rstrip('/')}/Accounts/{cfg['SMS_ACCOUNT_SID']}/Messages.json"
    try:
        response = requests.post(
            url,
            data={"To": normalize_number(to_number), "From": cfg["SMS_FROM_NUMBER"], "Body": body[:1600]},
            auth=(cfg["SMS_ACCOUNT_SID"], cfg["SMS_AUTH_TOKEN"]),
            timeout=int(cfg.get("SMS_TIMEOUT_SECONDS", 10)),
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise SMSDeliveryError(f"SMS gateway request failed: {exc}") from exc

    sid = (response.json() or {}).get("sid", "")
    current_app.logger.info("sms_sent", extra={"sid": sid})
    return sid
