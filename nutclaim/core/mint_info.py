import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .base import Method, Unit
from .models import MintInfoContact
from .nuts.nuts import MINT_QUOTE_SIGNATURE_NUT, WEBSOCKETS_NUT


class MintInfo(BaseModel):
    name: Optional[str] = None
    pubkey: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    contact: Optional[List[MintInfoContact]] = None
    motd: Optional[str] = None
    time: Optional[int] = None
    nuts: Dict[int, Any] = {}

    def __str__(self):
        return f"{self.name} ({self.description})"

    @classmethod
    def from_json_str(cls, json_str: str):
        return cls.model_validate(json.loads(json_str))

    def supports_nut(self, nut: int) -> bool:
        if self.nuts is None:
            return False
        return nut in self.nuts

    def supports_websocket_mint_quote(self, method: Method, unit: Unit) -> bool:
        if not self.nuts or not self.supports_nut(WEBSOCKETS_NUT):
            return False
        websocket_settings = self.nuts[WEBSOCKETS_NUT]
        if not websocket_settings or "supported" not in websocket_settings:
            return False
        websocket_supported = websocket_settings["supported"]
        for entry in websocket_supported:
            if entry.get("method") == method.name and entry.get("unit") == unit.name:
                if "bolt11_mint_quote" in entry.get("commands", []):
                    return True
        return False

    def supports_locked_mint_quote(self) -> bool:
        nut20 = self.nuts.get(MINT_QUOTE_SIGNATURE_NUT) if self.nuts else None
        return bool(nut20 and nut20.get("supported"))
