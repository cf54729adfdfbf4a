import base64
import hashlib
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

import cbor2
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.engine import RowMapping

from .crypto.b_dhke import hash_to_curve
from .crypto.keys import derive_keyset_id
from .crypto.secp import PublicKey

# ------- PROOFS -------


class ProofSpentState(Enum):
    unspent = "UNSPENT"
    spent = "SPENT"
    pending = "PENDING"

    def __str__(self):
        return self.name


class ProofState(BaseModel):
    Y: str
    state: ProofSpentState
    witness: Optional[str] = None

    @property
    def unspent(self) -> bool:
        return self.state == ProofSpentState.unspent

    @property
    def spent(self) -> bool:
        return self.state == ProofSpentState.spent


class P2PKWitness(BaseModel):
    """
    Unlocks P2PK spending condition of a Proof
    """

    signatures: List[str] = []

    @classmethod
    def from_witness(cls, witness: str):
        return cls(**json.loads(witness))


class Proof(BaseModel):
    """
    Value token
    """

    id: str = ""
    amount: int = 0
    secret: str = ""  # secret or message to be blinded and signed
    Y: str = ""  # hash_to_curve(secret)
    C: str = ""  # signature on secret, unblinded by wallet
    witness: Union[None, str] = None  # witness for spending condition
    derivation_path: Union[None, str] = ""  # derivation path of the proof

    def model_post_init(self, __context: Any) -> None:
        if not self.Y:
            self.Y = hash_to_curve(self.secret.encode("utf-8")).serialize().hex()

    @classmethod
    def from_dict(cls, proof_dict: dict):
        return cls(**proof_dict)

    def to_dict(self, include_witness=True):
        # necessary fields
        return_dict = dict(id=self.id, amount=self.amount, secret=self.secret, C=self.C)

        # optional fields
        if include_witness and self.witness:
            return_dict["witness"] = self.witness

        return return_dict

    @property
    def p2pksigs(self) -> List[str]:
        assert self.witness, "Witness is missing for p2pk signature"
        return P2PKWitness.from_witness(self.witness).signatures


class BlindedMessage(BaseModel):
    """
    Blinded message or blinded secret or "output" which is to be signed by the mint
    """

    amount: int
    id: str  # Keyset id
    B_: str  # Hex-encoded blinded message
    witness: Union[str, None] = None  # witnesses (used for P2PK with SIG_ALL)


class BlindedSignature(BaseModel):
    """
    Blinded signature or "promise" which is the signature on a `BlindedMessage`
    """

    id: str
    amount: int
    C_: str  # Hex-encoded signature


# ------- LIGHTNING -------


class MintQuoteState(Enum):
    unpaid = "UNPAID"
    paid = "PAID"
    pending = "PENDING"
    issued = "ISSUED"

    def __str__(self):
        return self.name


class MeltQuoteState(Enum):
    unpaid = "UNPAID"
    pending = "PENDING"
    paid = "PAID"

    def __str__(self):
        return self.name


class Method(Enum):
    bolt11 = 0


# ------- UNITS AND AMOUNTS -------


class Unit(Enum):
    sat = 0
    msat = 1
    usd = 2
    eur = 3
    btc = 4

    def str(self, amount: int) -> str:
        if self == Unit.sat:
            return f"{amount} sat"
        elif self == Unit.msat:
            return f"{amount} msat"
        elif self == Unit.usd:
            return f"${amount/100:.2f} USD"
        elif self == Unit.eur:
            return f"{amount/100:.2f} EUR"
        elif self == Unit.btc:
            return f"{amount/1e8:.8f} BTC"
        else:
            raise Exception("Invalid unit")

    @property
    def currency(self) -> str:
        if self in (Unit.sat, Unit.msat, Unit.btc):
            return "BTC"
        return self.name.upper()

    @property
    def minor_units(self) -> int:
        """Number of smallest units in one major unit of the currency."""
        return {
            Unit.sat: 10**8,
            Unit.msat: 10**11,
            Unit.btc: 10**8,
            Unit.usd: 100,
            Unit.eur: 100,
        }[self]

    def __str__(self):
        return self.name


@dataclass
class Amount:
    unit: Unit
    amount: int

    def convert(self, to_unit: Unit, rate: Union[Decimal, str, int] = 1) -> "Amount":
        """Converts to another unit, rounding down to the smallest unit.

        Args:
            to_unit (Unit): Target unit
            rate (Decimal): Price of one major unit of this currency in major units
                of the target currency. Ignored when both units share a currency.
        """
        if self.unit == to_unit:
            return self
        if self.unit.currency == to_unit.currency:
            rate = 1
        major = Decimal(self.amount) / Decimal(self.unit.minor_units)
        value = major * Decimal(str(rate)) * Decimal(to_unit.minor_units)
        return Amount(to_unit, int(value.to_integral_value(rounding=ROUND_FLOOR)))

    def str(self) -> str:
        return self.unit.str(self.amount)

    def __repr__(self):
        return self.unit.str(self.amount)


# ------- KEYSETS -------


class WalletKeyset:
    """
    Contains the keyset from the wallets's perspective.
    """

    id: str
    unit: Unit
    public_keys: Dict[int, PublicKey]
    mint_url: Union[str, None] = None
    active: Union[bool, None] = True
    input_fee_ppk: int = 0

    def __init__(
        self,
        public_keys: Dict[int, PublicKey],
        unit: str,
        id: Optional[str] = None,
        mint_url=None,
        active=True,
        input_fee_ppk=0,
    ):
        self.active = active
        self.mint_url = mint_url
        self.input_fee_ppk = input_fee_ppk
        self.public_keys = public_keys
        self.id = id or derive_keyset_id(self.public_keys)
        self.unit = Unit[unit]

    @property
    def amounts(self) -> List[int]:
        return sorted(self.public_keys.keys())

    def serialize(self):
        return json.dumps(
            {amount: key.serialize().hex() for amount, key in self.public_keys.items()}
        )

    def __repr__(self):
        return f"WalletKeyset({self.id}, {self.unit.name}, active={self.active})"


# ------- TOKENS -------


class Token(ABC):
    @property
    @abstractmethod
    def proofs(self) -> List[Proof]: ...

    @property
    @abstractmethod
    def mint(self) -> str: ...

    @property
    @abstractmethod
    def unit(self) -> str: ...

    @property
    @abstractmethod
    def memo(self) -> Optional[str]: ...

    @property
    def amount(self) -> int:
        return sum([p.amount for p in self.proofs])

    @property
    def keysets(self) -> List[str]:
        return list({p.id for p in self.proofs})


class TokenV3Token(BaseModel):
    mint: Optional[str] = None
    proofs: List[Proof]

    def to_dict(self):
        return_dict: Dict[str, Any] = dict(proofs=[p.to_dict() for p in self.proofs])
        if self.mint:
            return_dict.update(dict(mint=self.mint))
        return return_dict


@dataclass
class TokenV3(Token):
    """
    A Cashu token that includes proofs and their respective mints.
    """

    token: List[TokenV3Token] = field(default_factory=list)
    _memo: Optional[str] = None
    _unit: str = "sat"

    @property
    def proofs(self) -> List[Proof]:
        return [proof for token in self.token for proof in token.proofs]

    @property
    def mint(self) -> str:
        return self.mints[0]

    @property
    def mints(self) -> List[str]:
        return list({t.mint for t in self.token if t.mint})

    @property
    def memo(self) -> Optional[str]:
        return str(self._memo) if self._memo else None

    @property
    def unit(self) -> str:
        return self._unit

    def serialize_to_dict(self):
        return_dict: Dict[str, Any] = dict(token=[t.to_dict() for t in self.token])
        if self.memo:
            return_dict.update(dict(memo=self.memo))
        return_dict.update(dict(unit=self.unit))
        return return_dict

    @classmethod
    def deserialize(cls, tokenv3_serialized: str) -> "TokenV3":
        """
        Ingests a serialized "cashuA<json_urlsafe_base64>" token and returns a TokenV3.
        """
        prefix = "cashuA"
        if not tokenv3_serialized.startswith(prefix):
            raise ValueError(f"Token prefix not valid. Expected {prefix}.")
        token_base64 = tokenv3_serialized[len(prefix) :]
        # if base64 string is not a multiple of 4, pad it with "="
        token_base64 += "=" * (-len(token_base64) % 4)
        token = json.loads(base64.urlsafe_b64decode(token_base64))
        return cls.parse_obj(token)

    def serialize(self) -> str:
        """
        Takes a TokenV3 and serializes it as "cashuA<json_urlsafe_base64>.
        """
        tokenv3_serialized = "cashuA" + base64.urlsafe_b64encode(
            json.dumps(self.serialize_to_dict(), separators=(",", ":")).encode()
        ).decode()
        return tokenv3_serialized.rstrip("=")

    @classmethod
    def parse_obj(cls, token_dict: Dict[str, Any]):
        token: List[Dict[str, Any]] = token_dict.get("token") or []
        if not token:
            raise ValueError("Token must contain proofs.")
        return cls(
            token=[
                TokenV3Token(
                    mint=t.get("mint"),
                    proofs=[Proof.from_dict(p) for p in t.get("proofs") or []],
                )
                for t in token
            ],
            _memo=token_dict.get("memo"),
            _unit=token_dict.get("unit") or "sat",
        )


class TokenV4Proof(BaseModel):
    """
    Value token
    """

    a: int
    s: str  # secret
    c: bytes  # signature
    w: Optional[str] = None  # witness


class TokenV4Token(BaseModel):
    # keyset ID
    i: bytes
    # proofs
    p: List[TokenV4Proof]


@dataclass
class TokenV4(Token):
    # mint URL
    m: str
    # unit
    u: str
    # tokens
    t: List[TokenV4Token]
    # memo
    d: Optional[str] = None

    @property
    def mint(self) -> str:
        return self.m

    @property
    def memo(self) -> Optional[str]:
        return self.d

    @property
    def unit(self) -> str:
        return self.u

    @property
    def proofs(self) -> List[Proof]:
        return [
            Proof(id=token.i.hex(), amount=p.a, secret=p.s, C=p.c.hex(), witness=p.w)
            for token in self.t
            for p in token.p
        ]

    @classmethod
    def from_proofs(
        cls, mint: str, unit: str, proofs: List[Proof], memo: Optional[str] = None
    ) -> "TokenV4":
        proofs_by_id: Dict[str, List[Proof]] = {}
        for proof in proofs:
            proofs_by_id.setdefault(proof.id, []).append(proof)
        return cls(
            m=mint,
            u=unit,
            d=memo,
            t=[
                TokenV4Token(
                    i=bytes.fromhex(keyset_id),
                    p=[
                        TokenV4Proof(
                            a=p.amount, s=p.secret, c=bytes.fromhex(p.C), w=p.witness
                        )
                        for p in keyset_proofs
                    ],
                )
                for keyset_id, keyset_proofs in proofs_by_id.items()
            ],
        )

    def serialize_to_dict(self):
        return_dict: Dict[str, Any] = dict(t=[t.model_dump() for t in self.t])
        # strip witness if not present
        for token in return_dict["t"]:
            for proof in token["p"]:
                if not proof.get("w"):
                    del proof["w"]
        if self.d:
            return_dict.update(dict(d=self.d))
        return_dict.update(dict(m=self.m, u=self.u))
        return return_dict

    def serialize(self) -> str:
        """
        Takes a TokenV4 and serializes it as "cashuB<cbor_urlsafe_base64>.
        """
        tokenv4_serialized = "cashuB" + base64.urlsafe_b64encode(
            cbor2.dumps(self.serialize_to_dict())
        ).decode()
        return tokenv4_serialized.rstrip("=")

    @classmethod
    def deserialize(cls, tokenv4_serialized: str) -> "TokenV4":
        """
        Ingests a serialized "cashuB<cbor_urlsafe_base64>" token and returns a TokenV4.
        """
        prefix = "cashuB"
        if not tokenv4_serialized.startswith(prefix):
            raise ValueError(f"Token prefix not valid. Expected {prefix}.")
        token_base64 = tokenv4_serialized[len(prefix) :]
        token_base64 += "=" * (-len(token_base64) % 4)
        token = cbor2.loads(base64.urlsafe_b64decode(token_base64))
        return cls.parse_obj(token)

    @classmethod
    def parse_obj(cls, token_dict: dict):
        return cls(
            m=token_dict["m"],
            u=token_dict["u"],
            t=[TokenV4Token(**t) for t in token_dict["t"]],
            d=token_dict.get("d", None),
        )


def deserialize_token(token: str) -> Token:
    """Parses a serialized cashuA or cashuB token."""
    token = token.strip()
    if token.startswith("cashu:"):
        token = token[len("cashu:") :]
    if token.startswith("cashuB"):
        return TokenV4.deserialize(token)
    if token.startswith("cashuA"):
        tokenv3 = TokenV3.deserialize(token)
        if len(tokenv3.mints) != 1:
            raise ValueError("Token must contain proofs from exactly one mint.")
        return tokenv3
    raise ValueError("Token must start with cashuA or cashuB.")


TOKEN_HASH_VERSION = 1


def normalize_mint_url(url: str) -> str:
    return url.strip().rstrip("/").lower()


def token_hash(token: Token) -> str:
    """Idempotency key of a token.

    Hashes the semantic content (mint, unit, proofs) instead of the encoded
    string, so the same ecash in a cashuA or cashuB encoding, or with
    proofs in a different order, maps to the same key.
    """
    content = {
        "v": TOKEN_HASH_VERSION,
        "mint": normalize_mint_url(token.mint),
        "unit": token.unit,
        "proofs": sorted(
            [dict(id=p.id, amount=p.amount, secret=p.secret, C=p.C) for p in token.proofs],
            key=lambda p: p["secret"],
        ),
    }
    serialized = json.dumps(content, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


# ------- CLAIMS -------


class VersionedModel(BaseModel):
    """Row that is only ever written with the version it was read at."""

    version: int = 0


def _proofs_from_json(value: Union[str, List, None]) -> List[Proof]:
    if not value:
        return []
    items = json.loads(value) if isinstance(value, str) else value
    return [Proof.from_dict(p) for p in items]


class CashuAccount(VersionedModel):
    id: str
    user_id: str
    mint_url: str
    unit: str
    proofs: List[Proof] = []
    keyset_counters: Dict[str, int] = {}

    @property
    def balance(self) -> int:
        return sum([p.amount for p in self.proofs])

    def counter_for(self, keyset_id: str) -> int:
        return self.keyset_counters.get(keyset_id, 0)

    @classmethod
    def from_row(cls, row: RowMapping):
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            mint_url=row["mint_url"],
            unit=row["unit"],
            proofs=_proofs_from_json(row["proofs"]),
            keyset_counters=json.loads(row["keyset_counters"] or "{}"),
            version=row["version"],
        )


class ReceiveQuoteState(Enum):
    unpaid = "UNPAID"
    paid = "PAID"
    completed = "COMPLETED"
    expired = "EXPIRED"
    failed = "FAILED"

    def __str__(self):
        return self.name

    @property
    def terminal(self) -> bool:
        return self in (
            ReceiveQuoteState.completed,
            ReceiveQuoteState.expired,
            ReceiveQuoteState.failed,
        )


class ReceiveQuoteType(Enum):
    # receive over lightning
    lightning = "LIGHTNING"
    # bridging leg of a token claimed from another mint
    token = "TOKEN"


class ReceiveQuoteBase(VersionedModel):
    id: str
    user_id: str
    account_id: str
    quote_id: str  # mint quote id
    amount: int
    unit: str
    description: Optional[str] = None
    payment_request: str
    locking_derivation_path: str
    expires_at: int
    created_at: int = Field(default_factory=lambda: int(time.time()))
    type: ReceiveQuoteType = ReceiveQuoteType.lightning

    @property
    def currency(self) -> str:
        return Unit[self.unit].currency

    @property
    def expired(self) -> bool:
        return int(time.time()) > self.expires_at

    def base_fields(self) -> Dict[str, Any]:
        return self.model_dump(include=set(ReceiveQuoteBase.model_fields.keys()))


class UnpaidReceiveQuote(ReceiveQuoteBase):
    state: Literal[ReceiveQuoteState.unpaid] = ReceiveQuoteState.unpaid


class PaidReceiveQuote(ReceiveQuoteBase):
    state: Literal[ReceiveQuoteState.paid] = ReceiveQuoteState.paid
    keyset_id: str
    keyset_counter: int
    output_amounts: List[int]


class CompletedReceiveQuote(ReceiveQuoteBase):
    state: Literal[ReceiveQuoteState.completed] = ReceiveQuoteState.completed
    keyset_id: str
    keyset_counter: int
    output_amounts: List[int]


class ExpiredReceiveQuote(ReceiveQuoteBase):
    state: Literal[ReceiveQuoteState.expired] = ReceiveQuoteState.expired


class FailedReceiveQuote(ReceiveQuoteBase):
    state: Literal[ReceiveQuoteState.failed] = ReceiveQuoteState.failed
    failure_reason: str


ReceiveQuote = Union[
    UnpaidReceiveQuote,
    PaidReceiveQuote,
    CompletedReceiveQuote,
    ExpiredReceiveQuote,
    FailedReceiveQuote,
]

RECEIVE_QUOTE_CLASSES = {
    ReceiveQuoteState.unpaid: UnpaidReceiveQuote,
    ReceiveQuoteState.paid: PaidReceiveQuote,
    ReceiveQuoteState.completed: CompletedReceiveQuote,
    ReceiveQuoteState.expired: ExpiredReceiveQuote,
    ReceiveQuoteState.failed: FailedReceiveQuote,
}


def receive_quote_from_row(row: RowMapping) -> ReceiveQuote:
    state = ReceiveQuoteState(row["state"])
    fields: Dict[str, Any] = dict(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        quote_id=row["quote_id"],
        amount=row["amount"],
        unit=row["unit"],
        description=row["description"],
        payment_request=row["payment_request"],
        locking_derivation_path=row["locking_derivation_path"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        type=ReceiveQuoteType(row["type"]),
        version=row["version"],
    )
    if state in (ReceiveQuoteState.paid, ReceiveQuoteState.completed):
        fields.update(
            keyset_id=row["keyset_id"],
            keyset_counter=row["keyset_counter"],
            output_amounts=json.loads(row["output_amounts"]),
        )
    elif state == ReceiveQuoteState.failed:
        fields.update(failure_reason=row["failure_reason"] or "")
    logger.trace(f"Loaded receive quote {row['id']} in state {state}")
    return RECEIVE_QUOTE_CLASSES[state](**fields)


class TokenSwapState(Enum):
    pending = "PENDING"
    completed = "COMPLETED"
    failed = "FAILED"

    def __str__(self):
        return self.name


class TokenSwapBase(VersionedModel):
    token_hash: str
    user_id: str
    account_id: str
    token_proofs: List[Proof]
    input_amount: int
    fee_amount: int = 0
    amount: int  # amount received after fees
    keyset_id: str
    keyset_counter: int
    output_amounts: List[int]
    created_at: int = Field(default_factory=lambda: int(time.time()))

    @property
    def id(self) -> str:
        return self.token_hash

    def base_fields(self) -> Dict[str, Any]:
        return self.model_dump(include=set(TokenSwapBase.model_fields.keys()))


class PendingTokenSwap(TokenSwapBase):
    state: Literal[TokenSwapState.pending] = TokenSwapState.pending


class CompletedTokenSwap(TokenSwapBase):
    state: Literal[TokenSwapState.completed] = TokenSwapState.completed


class FailedTokenSwap(TokenSwapBase):
    state: Literal[TokenSwapState.failed] = TokenSwapState.failed
    failure_reason: str


TokenSwap = Union[PendingTokenSwap, CompletedTokenSwap, FailedTokenSwap]

TOKEN_SWAP_CLASSES = {
    TokenSwapState.pending: PendingTokenSwap,
    TokenSwapState.completed: CompletedTokenSwap,
    TokenSwapState.failed: FailedTokenSwap,
}


def token_swap_from_row(row: RowMapping) -> TokenSwap:
    state = TokenSwapState(row["state"])
    fields: Dict[str, Any] = dict(
        token_hash=row["token_hash"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        token_proofs=_proofs_from_json(row["token_proofs"]),
        input_amount=row["input_amount"],
        fee_amount=row["fee_amount"],
        amount=row["amount"],
        keyset_id=row["keyset_id"],
        keyset_counter=row["keyset_counter"],
        output_amounts=json.loads(row["output_amounts"]),
        created_at=row["created_at"],
        version=row["version"],
    )
    if state == TokenSwapState.failed:
        fields.update(failure_reason=row["failure_reason"] or "")
    return TOKEN_SWAP_CLASSES[state](**fields)
