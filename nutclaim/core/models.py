from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from .base import BlindedMessage, BlindedSignature, MintQuoteState, Proof, ProofState

# ------- API -------

# ------- API: INFO -------


class MintInfoContact(BaseModel):
    method: str
    info: str


class GetInfoResponse(BaseModel):
    name: Optional[str] = None
    pubkey: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    description_long: Optional[str] = None
    contact: Optional[List[MintInfoContact]] = None
    motd: Optional[str] = None
    icon_url: Optional[str] = None
    urls: Optional[List[str]] = None
    time: Optional[int] = None
    nuts: Optional[Dict[int, Any]] = None

    # BEGIN DEPRECATED: NUT-06 contact field change
    @model_validator(mode="before")
    @classmethod
    def preprocess_deprecated_contact_field(cls, values):
        if isinstance(values, dict) and values.get("contact"):
            if isinstance(values["contact"][0], list):
                values["contact"] = [
                    MintInfoContact(method=method, info=info)
                    for method, info in values["contact"]
                    if method and info
                ]
        return values

    # END DEPRECATED: NUT-06 contact field change


# ------- API: KEYS -------


class KeysResponseKeyset(BaseModel):
    id: str
    unit: str
    keys: Dict[int, str]


class KeysResponse(BaseModel):
    keysets: List[KeysResponseKeyset]


class KeysetsResponseKeyset(BaseModel):
    id: str
    unit: str
    active: bool
    input_fee_ppk: Optional[int] = None


class KeysetsResponse(BaseModel):
    keysets: List[KeysetsResponseKeyset]


# ------- API: MINT QUOTE -------


class PostMintQuoteRequest(BaseModel):
    unit: str  # output unit
    amount: int = Field(..., gt=0)  # output amount
    description: Optional[str] = None  # invoice description
    pubkey: Optional[str] = None  # NUT-20 locking key


class PostMintQuoteResponse(BaseModel):
    quote: str  # quote id
    request: str  # input payment request
    state: Optional[str] = None  # state of the quote
    expiry: Optional[int] = None  # expiry of the quote
    amount: Optional[int] = None
    unit: Optional[str] = None
    pubkey: Optional[str] = None
    paid: Optional[bool] = None  # DEPRECATED as per NUT-04 PR #141

    @property
    def mint_quote_state(self) -> MintQuoteState:
        if self.state:
            return MintQuoteState(self.state)
        # mints that only send the deprecated "paid" flag
        return MintQuoteState.paid if self.paid else MintQuoteState.unpaid


# ------- API: MINT -------


class PostMintRequest(BaseModel):
    quote: str  # quote id
    outputs: List[BlindedMessage]
    signature: Optional[str] = None  # NUT-20 signature


class PostMintResponse(BaseModel):
    signatures: List[BlindedSignature] = []


# ------- API: MELT QUOTE -------


class PostMeltQuoteRequest(BaseModel):
    unit: str  # input unit
    request: str  # output payment request


class PostMeltQuoteResponse(BaseModel):
    quote: str  # quote id
    amount: int  # input amount
    fee_reserve: int  # input fee reserve
    state: Optional[str] = None  # state of the quote
    expiry: Optional[int] = None  # expiry of the quote
    payment_preimage: Optional[str] = None  # payment preimage
    change: Optional[List[BlindedSignature]] = None  # NUT-08 change
    paid: Optional[bool] = None  # DEPRECATED as per NUT PR #136


# ------- API: MELT -------


class PostMeltRequest(BaseModel):
    quote: str  # quote id
    inputs: List[Proof]
    outputs: Optional[List[BlindedMessage]] = None


# ------- API: SWAP -------


class PostSwapRequest(BaseModel):
    inputs: List[Proof]
    outputs: List[BlindedMessage]


class PostSwapResponse(BaseModel):
    signatures: List[BlindedSignature]


# ------- API: CHECK -------


class PostCheckStateRequest(BaseModel):
    Ys: List[str]


class PostCheckStateResponse(BaseModel):
    states: List[ProofState] = []


# ------- API: RESTORE -------


class PostRestoreRequest(BaseModel):
    outputs: List[BlindedMessage]


class PostRestoreResponse(BaseModel):
    outputs: List[BlindedMessage] = []
    signatures: List[BlindedSignature] = []
    promises: Optional[List[BlindedSignature]] = []  # deprecated since 0.15.1
