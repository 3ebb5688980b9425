"""
CampusBid Escrow — Payment Webhook Pydantic Schemas
Providers name fields inconsistently, so both snake_case and camelCase
spellings are accepted.
"""
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class PaymentWebhookPayload(BaseModel):
    model_config = {"extra": "allow"}

    event: Optional[str] = None
    transaction_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("transaction_id", "transactionId", "tx_ref"),
    )
    provider_reference: Optional[str] = Field(
        None, validation_alias=AliasChoices("provider_reference", "providerReference", "reference"),
    )
    status: str = ""
    metadata: Optional[dict] = None


class WebhookAck(BaseModel):
    """Always returned with HTTP 200 so the provider stops retrying."""

    received: bool = True
    processed: bool
    webhook_id: int
    transaction_id: Optional[str] = None
    escrow_created: bool = False
