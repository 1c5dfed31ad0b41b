"""
Outbox payload contracts.

One schema per job type. The row's job_type column is the tag; payloads are
validated when a producer enqueues them and again when the runner picks the
job up, so a malformed row is dead-lettered instead of retried.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from finishing_crm.models.outbox import JobType
from finishing_crm.services.errors import PayloadValidationError, UnknownJobTypeError


class SendOfferEmailPayload(BaseModel):
    """Email-send job: one row per company, all eligible recipients inside."""
    model_config = ConfigDict(extra="allow")

    company_id: str = Field(..., min_length=1)
    contact_ids: List[str] = Field(..., min_length=1)
    offer_key: str = Field(..., min_length=1)
    campaign_key: str = Field(..., min_length=1)
    subject: Optional[str] = None
    preview: Optional[str] = None
    custom_message: Optional[str] = None


class OrderLineItem(BaseModel):
    product_code: str
    description: Optional[str] = None
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)


class CrmSyncOrderPayload(BaseModel):
    """Push a paid order to the external CRM/accounting system."""
    order_id: str = Field(..., min_length=1)
    company_id: str = Field(..., min_length=1)
    items: List[OrderLineItem] = Field(..., min_length=1)
    total: Decimal = Field(..., ge=0)
    currency: str = Field(default="GBP", min_length=3, max_length=3)
    payment_reference: Optional[str] = None


PAYLOAD_SCHEMAS: Dict[str, Type[BaseModel]] = {
    JobType.SEND_OFFER_EMAIL.value: SendOfferEmailPayload,
    JobType.CRM_SYNC_ORDER.value: CrmSyncOrderPayload,
}


def normalize_job_type(job_type: Any) -> str:
    return job_type.value if isinstance(job_type, JobType) else str(job_type)


def parse_payload(job_type: Any, payload: Optional[Dict[str, Any]]) -> BaseModel:
    """
    Validate a raw payload against the schema registered for job_type.

    Raises:
        UnknownJobTypeError: No schema registered for job_type
        PayloadValidationError: Payload does not match the schema
    """
    key = normalize_job_type(job_type)
    schema = PAYLOAD_SCHEMAS.get(key)
    if schema is None:
        raise UnknownJobTypeError(f"Unknown job type: {key}", {"job_type": key})

    try:
        return schema.model_validate(payload or {})
    except ValidationError as e:
        errors = [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
            for err in e.errors()
        ]
        raise PayloadValidationError(
            f"Invalid {key} payload",
            {"job_type": key, "errors": errors},
        ) from e


def dump_payload(model: BaseModel) -> Dict[str, Any]:
    """JSON-safe dict for storage in the payload column."""
    return model.model_dump(mode="json", exclude_none=True)
