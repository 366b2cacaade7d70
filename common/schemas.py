"""
Request models for the gateway's write paths.

Field names follow the public JSON contract (camelCase, ``from``), so models
are populated by alias. Everything that can be checked without the ledger is
checked here; existence and uniqueness checks happen in the handlers.
"""
from decimal import Decimal
from typing import Annotated, List, Optional
from urllib.parse import urlparse

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

NAME_MAX_LENGTH = 32
MEMO_MAX_BYTES = 128
BATCH_MIN, BATCH_MAX = 1, 10
SPLIT_MIN, SPLIT_MAX = 2, 10
TOTAL_BPS = 10_000
MIN_INTERVAL_SECONDS = 60

def validate_agent_name(value: str) -> str:
    if not 1 <= len(value) <= NAME_MAX_LENGTH:
        raise ValueError(f"Name must be between 1 and {NAME_MAX_LENGTH} characters")
    # Names are used verbatim as a derivation seed, which is capped at 32 bytes
    if len(value.encode("utf-8")) > NAME_MAX_LENGTH:
        raise ValueError(f"Name must be at most {NAME_MAX_LENGTH} bytes")
    return value

def validate_memo(value: Optional[str]) -> Optional[str]:
    if value is not None and len(value.encode("utf-8")) > MEMO_MAX_BYTES:
        raise ValueError(f"Memo exceeds {MEMO_MAX_BYTES} bytes")
    return value

AgentName = Annotated[str, AfterValidator(validate_agent_name)]
Memo = Annotated[Optional[str], AfterValidator(validate_memo)]
PositiveAmount = Annotated[Decimal, Field(gt=0)]

class GatewayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet: Optional[str] = None

class RegisterAgentRequest(GatewayRequest):
    name: AgentName

class TransferRequest(GatewayRequest):
    sender: AgentName = Field(alias="from")
    to: AgentName
    amount: PositiveAmount
    memo: Memo = None

class BatchPaymentItem(BaseModel):
    to: AgentName
    amount: PositiveAmount
    memo: Memo = None

class BatchPaymentRequest(GatewayRequest):
    sender: AgentName = Field(alias="from")
    payments: List[BatchPaymentItem]

    @field_validator("payments")
    @classmethod
    def check_batch_size(cls, payments):
        if not BATCH_MIN <= len(payments) <= BATCH_MAX:
            raise ValueError(f"Batch must contain {BATCH_MIN}-{BATCH_MAX} payments")
        return payments

class SplitRecipient(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: AgentName
    share_bps: int = Field(alias="shareBps", gt=0, le=TOTAL_BPS)

class SplitPaymentRequest(GatewayRequest):
    sender: AgentName = Field(alias="from")
    total_amount: PositiveAmount = Field(alias="totalAmount")
    recipients: List[SplitRecipient]
    memo: Memo = None

    @field_validator("recipients")
    @classmethod
    def check_shares(cls, recipients):
        if not SPLIT_MIN <= len(recipients) <= SPLIT_MAX:
            raise ValueError(f"Split must have {SPLIT_MIN}-{SPLIT_MAX} recipients")
        total = sum(r.share_bps for r in recipients)
        if total != TOTAL_BPS:
            raise ValueError(f"Shares must sum to {TOTAL_BPS} basis points (got {total})")
        return recipients

class CreateSubscriptionRequest(GatewayRequest):
    sender: AgentName = Field(alias="from")
    to: AgentName
    amount: PositiveAmount
    interval_seconds: int = Field(alias="intervalSeconds", ge=MIN_INTERVAL_SECONDS)

class SubscriptionRef(GatewayRequest):
    """Identifies a subscription by its (sender, receiver) pair"""
    sender: AgentName = Field(alias="from")
    to: AgentName

class DailyLimitRequest(GatewayRequest):
    name: AgentName
    limit_usdc: Decimal = Field(alias="limitUsdc", ge=0)

class ApproveRequest(GatewayRequest):
    owner: AgentName
    spender: AgentName
    amount: PositiveAmount

    @model_validator(mode="after")
    def check_not_self(self):
        if self.owner == self.spender:
            raise ValueError("Cannot approve yourself")
        return self

class AllowanceRef(GatewayRequest):
    owner: AgentName
    spender: AgentName

class TransferFromRequest(AllowanceRef):
    amount: PositiveAmount
    memo: Memo = None

class IncreaseAllowanceRequest(AllowanceRef):
    amount: PositiveAmount

class InitCounterRequest(GatewayRequest):
    pass

class CreateInvoiceRequest(GatewayRequest):
    requester_name: AgentName = Field(alias="requesterName")
    payer_name: AgentName = Field(alias="payerName")
    amount: PositiveAmount
    memo: Annotated[str, Field(min_length=1), AfterValidator(validate_memo)]
    expires_in_seconds: int = Field(default=0, alias="expiresInSeconds", ge=0)

    @model_validator(mode="after")
    def check_not_self(self):
        if self.requester_name == self.payer_name:
            raise ValueError("Cannot invoice yourself")
        return self

class InvoiceActionRequest(GatewayRequest):
    pass

class RefundRequest(GatewayRequest):
    agent_name: AgentName = Field(alias="agentName")
    invoice_id: int = Field(alias="invoiceId", ge=0)
    amount: Optional[PositiveAmount] = None
    reason: Optional[str] = None

class WebhookRegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_name: AgentName = Field(alias="agentName")
    url: str
    events: Optional[List[str]] = None

    @field_validator("url")
    @classmethod
    def check_url(cls, url):
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Invalid URL")
        return url

class WebhookRemoveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_name: AgentName = Field(alias="agentName")
