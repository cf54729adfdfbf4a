from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class JSONRPCRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: int
    method: str
    params: dict


class JSONRPCResponse(BaseModel):
    jsonrpc: str = "2.0"
    result: dict
    id: int


class JSONRPCNotification(BaseModel):
    jsonrpc: str = "2.0"
    method: str
    params: dict


class JSONRPCError(BaseModel):
    code: int
    message: str


class JSONRPCErrorResponse(BaseModel):
    jsonrpc: str = "2.0"
    error: JSONRPCError
    id: Optional[int] = None


# Cashu Websocket protocol


class JSONRPCMethods(Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class JSONRPCSubscriptionKinds(Enum):
    BOLT11_MINT_QUOTE = "bolt11_mint_quote"
    BOLT11_MELT_QUOTE = "bolt11_melt_quote"
    PROOF_STATE = "proof_state"


class JSONRPCSubscribeParams(BaseModel):
    kind: JSONRPCSubscriptionKinds
    filters: List[str]
    subId: str


class JSONRPCUnsubscribeParams(BaseModel):
    subId: str


class JSONRPCNotficationParams(BaseModel):
    subId: str
    payload: dict
