import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from config import Settings
from errors import ConfigError, UpstreamError
from models import STKPushRequest

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

TRANSACTION_TYPE = "CustomerPayBillOnline"
DEFAULT_ACCOUNT_REFERENCE = "Test"
DEFAULT_TRANSACTION_DESC = "Payment for service"

CALLBACK_ACK = {"message": "Callback received successfully."}


def _upstream_detail(exc: requests.exceptions.RequestException) -> str:
    """Body of the failed upstream response, or the exception text when there is none."""
    response = getattr(exc, "response", None)
    if response is not None:
        try:
            return json.dumps(response.json())
        except ValueError:
            return response.text
    return str(exc)


def get_access_token(settings: Settings) -> str:
    """Exchange the consumer key/secret for a Daraja bearer token.

    A new token is fetched on every call.
    """
    if not settings.consumer_key or not settings.consumer_secret:
        logger.error("M-Pesa consumer key or secret is not defined in environment variables.")
        raise ConfigError("M-Pesa credentials not configured.")

    credentials = f"{settings.consumer_key}:{settings.consumer_secret}".encode()
    headers = {"Authorization": f"Basic {base64.b64encode(credentials).decode()}"}

    try:
        response = requests.get(f"{settings.api_base_url}{TOKEN_PATH}", headers=headers, timeout=10)
        response.raise_for_status()
        body = response.json()
    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to get M-Pesa access token: {_upstream_detail(e)}")
        raise UpstreamError("Could not retrieve M-Pesa access token.") from e

    token = body.get("access_token") if isinstance(body, dict) else None
    if not token:
        logger.error(f"Failed to get M-Pesa access token: no access_token in {json.dumps(body)}")
        raise UpstreamError("Could not retrieve M-Pesa access token.")
    return token


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """YYYYMMDDHHmmss of the given (default: current) UTC time."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def build_stk_payload(settings: Settings, data: STKPushRequest, timestamp: str) -> Dict[str, Any]:
    shortcode = settings.shortcode
    return {
        "BusinessShortCode": shortcode,
        "Password": generate_password(shortcode, settings.passkey, timestamp),
        "Timestamp": timestamp,
        "TransactionType": TRANSACTION_TYPE,
        "Amount": data.amount,
        "PartyA": data.phone,
        "PartyB": shortcode,
        "PhoneNumber": data.phone,
        "CallBackURL": settings.callback_url,
        "AccountReference": data.accountReference or DEFAULT_ACCOUNT_REFERENCE,
        "TransactionDesc": data.transactionDesc or DEFAULT_TRANSACTION_DESC,
    }


def initiate_stk_push(settings: Settings, data: STKPushRequest) -> Dict[str, Any]:
    """Send an STK Push to the payer's phone and return Daraja's response unchanged."""
    access_token = get_access_token(settings)

    if not settings.passkey or not settings.shortcode:
        logger.error("M-Pesa passkey or shortcode is not defined.")
        raise ConfigError("M-Pesa passkey or shortcode not configured.")

    payload = build_stk_payload(settings, data, generate_timestamp())
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }

    try:
        response = requests.post(
            f"{settings.api_base_url}{STK_PUSH_PATH}", json=payload, headers=headers, timeout=20
        )
        response.raise_for_status()
        result = response.json()
    except requests.exceptions.RequestException as e:
        logger.error(f"STK Push failed: {_upstream_detail(e)}")
        raise UpstreamError("Failed to initiate STK Push.") from e

    logger.info(f"STK Push initiated successfully: {json.dumps(result)}")
    return result


def handle_callback(payload: Any) -> Dict[str, str]:
    """Log a Daraja payment callback. Nothing is stored or correlated."""
    if isinstance(payload, (bytes, str)):
        logger.info(f"Received M-Pesa callback (unparsed): {payload!r}")
    else:
        logger.info(f"Received M-Pesa callback: {json.dumps(payload, indent=2, default=str)}")
    return dict(CALLBACK_ACK)
