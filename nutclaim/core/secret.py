import json
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from pydantic import BaseModel, Field, RootModel

from .crypto.secp import PrivateKey


class SecretKind(Enum):
    P2PK = "P2PK"
    HTLC = "HTLC"


class Tags(RootModel[List[List[str]]]):
    """
    Tags are used to encode additional information in the Secret of a Proof.
    """

    root: List[List[str]] = []

    def __init__(self, tags: Optional[List[List[str]]] = None):
        super().__init__(tags or [])

    def __setitem__(self, key: str, value: Union[str, List[str]]) -> None:
        if isinstance(value, str):
            self.root.append([key, value])
        elif isinstance(value, list):
            self.root.append([key, *value])

    def __getitem__(self, key: str) -> Union[str, None]:
        return self.get_tag(key)

    def get_tag(self, tag_name: str) -> Union[str, None]:
        for tag in self.root:
            if tag and tag[0] == tag_name and len(tag) > 1:
                return tag[1]
        return None

    def get_tag_all(self, tag_name: str) -> List[str]:
        all_tags = []
        for tag in self.root:
            if tag and tag[0] == tag_name:
                for t in tag[1:]:
                    all_tags.append(t)
        return all_tags


class Secret(BaseModel):
    """Describes spending condition encoded in the secret field of a Proof (NUT-10)."""

    kind: str
    data: str
    tags: Tags = Field(default_factory=Tags)
    nonce: Union[None, str] = None

    def serialize(self) -> str:
        data_dict: Dict[str, Any] = {
            "nonce": self.nonce or PrivateKey().serialize()[:32],
            "data": self.data,
        }
        if self.tags.root:
            data_dict["tags"] = self.tags.root
        return json.dumps(
            [self.kind, data_dict],
        )

    @classmethod
    def deserialize(cls, from_proof: str):
        """Parses a NUT-10 secret `[kind, {nonce, data, tags}]`.

        Raises:
            ValueError: if the secret is JSON but not a well-formed NUT-10 secret
        """
        secret = json.loads(from_proof)
        if not isinstance(secret, list) or len(secret) != 2:
            raise ValueError("secret is not a [kind, data] pair")
        kind, kwargs = secret
        if not isinstance(kind, str) or not isinstance(kwargs, dict):
            raise ValueError("secret kind or data malformed")
        if "data" not in kwargs or "nonce" not in kwargs:
            raise ValueError("secret is missing data or nonce")
        tags_list = kwargs.get("tags") or []
        if not isinstance(tags_list, list) or not all(
            isinstance(t, list) for t in tags_list
        ):
            raise ValueError("secret tags malformed")
        # raises pydantic.ValidationError (a ValueError) on wrong types
        tags = Tags.model_validate(tags_list)
        logger.trace(f"Deserialized Secret: {kind}, {kwargs['data']}, {tags}")
        return cls(kind=kind, data=kwargs["data"], nonce=kwargs["nonce"], tags=tags)
