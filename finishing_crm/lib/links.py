"""
Link builders for emails and portals.

Offer links carry a time-limited JWT that encodes:
- Company and contact IDs (for a personalized landing page)
- Campaign key and offer key (which campaign config to load)
- Expiration timestamp

and resolve to URLs like:
https://www.example.com/m/eyJ...

Distributor portal paths are plain string formatting of the distributor code.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

import jwt

from finishing_crm.lib.settings import settings
from finishing_crm.lib.logging import get_logger


logger = get_logger(__name__)

OFFER_TOKEN_TYPE = "offer_link"


def portal_path(distributor_code: str) -> str:
    """Portal path for a distributor, e.g. /portal/distributor/ABC001."""
    return f"/portal/distributor/{quote(distributor_code, safe='')}"


def portal_url(distributor_code: str, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.app_base_url).rstrip("/")
    return f"{base}{portal_path(distributor_code)}"


class OfferLinkGenerator:
    """
    Generate time-limited offer links for marketing emails.

    Uses JWT tokens so the landing page can identify the contact without
    a login. Tokens expire after `offer_link_ttl_hours` (30 days by default).
    """

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None):
        self.secret_key = secret_key if secret_key is not None else settings.secret_key
        if not self.secret_key:
            raise ValueError("Secret key is required for JWT signing")

        self.algorithm = "HS256"
        self.base_url = (base_url or settings.app_base_url).rstrip("/")

    def generate_offer_token(
        self,
        company_id: str,
        contact_id: str,
        campaign_key: str,
        offer_key: str,
        ttl_hours: Optional[int] = None,
    ) -> str:
        """
        Generate JWT token for an offer landing page.

        Args:
            company_id: Recipient company
            contact_id: Recipient contact
            campaign_key: Campaign configuration to load
            offer_key: Offer shown on the landing page
            ttl_hours: Token validity in hours (defaults to settings)

        Returns:
            JWT token string
        """
        now = datetime.now(timezone.utc)
        expiration = now + timedelta(hours=ttl_hours or settings.offer_link_ttl_hours)

        payload = {
            "type": OFFER_TOKEN_TYPE,
            "company_id": company_id,
            "contact_id": contact_id,
            "campaign_key": campaign_key,
            "offer_key": offer_key,
            "iat": int(now.timestamp()),
            "exp": int(expiration.timestamp()),
        }

        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_offer_token(self, token: str) -> Optional[dict]:
        """
        Verify and decode an offer token.

        Returns:
            Decoded payload dict if valid, None if invalid/expired
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            logger.warning("Offer token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid offer token: {e}")
            return None

        if payload.get("type") != OFFER_TOKEN_TYPE:
            logger.warning("Invalid token type", extra={"token_type": payload.get("type")})
            return None

        return payload

    def build_offer_url(
        self,
        company_id: str,
        contact_id: str,
        campaign_key: str,
        offer_key: str,
        ttl_hours: Optional[int] = None,
    ) -> str:
        token = self.generate_offer_token(
            company_id=company_id,
            contact_id=contact_id,
            campaign_key=campaign_key,
            offer_key=offer_key,
            ttl_hours=ttl_hours,
        )
        return f"{self.base_url}/m/{token}"


def get_offer_link_generator() -> OfferLinkGenerator:
    return OfferLinkGenerator()
