import json
from posixpath import join
from typing import List, Optional, Tuple, Union

import httpx
from httpx import Response
from loguru import logger

from ..core.base import (
    BlindedMessage,
    BlindedSignature,
    Proof,
    Unit,
    WalletKeyset,
)
from ..core.crypto.secp import PublicKey
from ..core.errors import MintOperationError, RateLimitError
from ..core.models import (
    GetInfoResponse,
    KeysetsResponse,
    KeysetsResponseKeyset,
    KeysResponse,
    PostCheckStateRequest,
    PostCheckStateResponse,
    PostMeltQuoteRequest,
    PostMeltQuoteResponse,
    PostMeltRequest,
    PostMintQuoteRequest,
    PostMintQuoteResponse,
    PostMintRequest,
    PostMintResponse,
    PostRestoreRequest,
    PostRestoreResponse,
    PostSwapRequest,
    PostSwapResponse,
)
from ..core.settings import settings


def async_set_httpx_client(func):
    """
    Decorator that wraps around any async class method of LedgerAPI that makes
    API calls. Creates the HTTP client with the client version header and the
    configured proxy the first time it is needed.
    """

    async def wrapper(self, *args, **kwargs):
        if self.httpx is None:
            proxy_url: Union[str, None] = settings.http_proxy or None
            headers_dict = {"Client-version": settings.version}

            self.httpx = httpx.AsyncClient(
                verify=not settings.debug,
                proxy=proxy_url,
                headers=headers_dict,
                base_url=self.url,
                timeout=None if settings.debug else settings.wallet_request_timeout,
            )
        return await func(self, *args, **kwargs)

    return wrapper


class LedgerAPI:
    """HTTP client for the v1 endpoints of one mint."""

    httpx: Optional[httpx.AsyncClient]

    def __init__(self, url: str):
        self.url = url.rstrip("/")
        self.httpx = None

    async def close(self):
        if self.httpx is not None:
            await self.httpx.aclose()
            self.httpx = None

    @staticmethod
    def raise_on_error_request(
        resp: Response,
    ) -> None:
        """Raises an exception if the response from the mint contains an error.

        Args:
            resp (Response): Response from mint

        Raises:
            RateLimitError: if the mint answers with HTTP 429
            MintOperationError: if the response contains an error
        """
        if resp.status_code == 429:
            raise RateLimitError()
        try:
            resp_dict = resp.json()
        except json.JSONDecodeError:
            # if we can't decode the response, raise for status
            resp.raise_for_status()
            return
        if isinstance(resp_dict, dict) and "detail" in resp_dict:
            logger.trace(f"Error from mint: {resp_dict}")
            raise MintOperationError(
                str(resp_dict["detail"]), code=int(resp_dict.get("code") or 0)
            )
        # raise for status if no error
        resp.raise_for_status()

    """
    ENDPOINTS
    """

    @async_set_httpx_client
    async def _get_keys(self) -> List[WalletKeyset]:
        """API that gets the current keys of the mint

        Returns:
            List[WalletKeyset]: Current mint keysets

        Raises:
            Exception: If no keys are received from the mint
        """
        resp = await self.httpx.get(
            join(self.url, "v1/keys"),
        )
        self.raise_on_error_request(resp)
        keys_dict: dict = resp.json()
        assert len(keys_dict), Exception("did not receive any keys")
        keys = KeysResponse.model_validate(keys_dict)
        keysets_str = " ".join([f"{k.id} ({k.unit})" for k in keys.keysets])
        logger.debug(f"Received {len(keys.keysets)} keysets from mint: {keysets_str}.")
        ret = [
            WalletKeyset(
                id=keyset.id,
                unit=keyset.unit,
                public_keys={
                    int(amt): PublicKey(bytes.fromhex(val), raw=True)
                    for amt, val in keyset.keys.items()
                },
                mint_url=self.url,
            )
            for keyset in keys.keysets
        ]
        return ret

    @async_set_httpx_client
    async def _get_keyset(self, keyset_id: str) -> WalletKeyset:
        """API that gets the keys of a specific keyset from the mint.

        Args:
            keyset_id (str): Keyset ID, urlsafe-encoded before sending to mint

        Returns:
            WalletKeyset: Keyset with ID keyset_id
        """
        keyset_id_urlsafe = keyset_id.replace("+", "-").replace("/", "_")
        resp = await self.httpx.get(
            join(self.url, f"v1/keys/{keyset_id_urlsafe}"),
        )
        self.raise_on_error_request(resp)

        keys_dict = resp.json()
        assert len(keys_dict), Exception("did not receive any keys")
        keys = KeysResponse.model_validate(keys_dict)
        this_keyset = keys.keysets[0]
        keyset_keys = {
            int(amt): PublicKey(bytes.fromhex(val), raw=True)
            for amt, val in this_keyset.keys.items()
        }
        keyset = WalletKeyset(
            id=keyset_id,
            unit=this_keyset.unit,
            public_keys=keyset_keys,
            mint_url=self.url,
        )
        return keyset

    @async_set_httpx_client
    async def _get_keysets(self) -> List[KeysetsResponseKeyset]:
        """API that gets a list of all keysets of the mint.

        Raises:
            Exception: If no keysets are received from the mint
        """
        resp = await self.httpx.get(
            join(self.url, "v1/keysets"),
        )
        self.raise_on_error_request(resp)

        keysets_dict = resp.json()
        keysets = KeysetsResponse.model_validate(keysets_dict).keysets
        if not keysets:
            raise Exception("did not receive any keysets")
        return keysets

    @async_set_httpx_client
    async def _get_info(self) -> GetInfoResponse:
        """API that gets the mint info."""
        resp = await self.httpx.get(
            join(self.url, "v1/info"),
        )
        self.raise_on_error_request(resp)
        data: dict = resp.json()
        mint_info: GetInfoResponse = GetInfoResponse.model_validate(data)
        return mint_info

    @async_set_httpx_client
    async def mint_quote(
        self,
        amount: int,
        unit: Unit,
        pubkey: Optional[str] = None,
        memo: Optional[str] = None,
    ) -> PostMintQuoteResponse:
        """Requests a mint quote from the server and returns a payment request.

        Args:
            amount (int): Amount of tokens to mint
            unit (Unit): Unit of the amount
            pubkey (Optional[str], optional): NUT-20 key that has to sign the mint request
            memo (Optional[str], optional): Memo to attach to Lightning invoice. Defaults to None.

        Returns:
            PostMintQuoteResponse: Mint Quote Response
        """
        logger.trace("Requesting mint quote: POST /v1/mint/quote/bolt11")
        payload = PostMintQuoteRequest(
            unit=unit.name, amount=amount, description=memo, pubkey=pubkey
        )
        resp = await self.httpx.post(
            join(self.url, "v1/mint/quote/bolt11"),
            json=payload.model_dump(exclude_none=True),
        )
        self.raise_on_error_request(resp)
        return_dict = resp.json()
        return PostMintQuoteResponse.model_validate(return_dict)

    @async_set_httpx_client
    async def get_mint_quote(self, quote: str) -> PostMintQuoteResponse:
        """Returns an existing mint quote from the server.

        Args:
            quote (str): Quote ID
        """
        logger.trace(f"Checking mint quote: GET /v1/mint/quote/bolt11/{quote}")
        resp = await self.httpx.get(
            join(self.url, f"v1/mint/quote/bolt11/{quote}"),
        )
        self.raise_on_error_request(resp)
        return_dict = resp.json()
        return PostMintQuoteResponse.model_validate(return_dict)

    @async_set_httpx_client
    async def mint(
        self,
        outputs: List[BlindedMessage],
        quote: str,
        signature: Optional[str] = None,
    ) -> List[BlindedSignature]:
        """Mints new ecash for a paid quote.

        Args:
            outputs (List[BlindedMessage]): Outputs to mint new tokens with
            quote (str): Quote ID.
            signature (Optional[str]): NUT-20 signature for locked quotes

        Returns:
            List[BlindedSignature]: Signatures on the outputs

        Raises:
            MintOperationError: If the minting fails
        """
        outputs_payload = PostMintRequest(
            outputs=outputs, quote=quote, signature=signature
        )
        logger.trace("Minting: POST /v1/mint/bolt11")

        def _mintrequest_include_fields(outputs: List[BlindedMessage]):
            """strips away fields from the model that aren't necessary for the /mint"""
            outputs_include = {"id", "amount", "B_"}
            include = {
                "quote": ...,
                "outputs": {i: outputs_include for i in range(len(outputs))},
            }
            if signature:
                include["signature"] = ...
            return include

        payload = outputs_payload.model_dump(include=_mintrequest_include_fields(outputs))  # type: ignore
        resp = await self.httpx.post(
            join(self.url, "v1/mint/bolt11"),
            json=payload,  # type: ignore
        )
        self.raise_on_error_request(resp)
        response_dict = resp.json()
        logger.trace("Minted: POST /v1/mint/bolt11")
        promises = PostMintResponse.model_validate(response_dict).signatures
        return promises

    @async_set_httpx_client
    async def melt_quote(
        self, payment_request: str, unit: Unit
    ) -> PostMeltQuoteResponse:
        """Requests a quote for paying a Lightning invoice with ecash."""
        payload = PostMeltQuoteRequest(unit=unit.name, request=payment_request)

        resp = await self.httpx.post(
            join(self.url, "v1/melt/quote/bolt11"),
            json=payload.model_dump(),
        )
        self.raise_on_error_request(resp)
        return_dict = resp.json()
        return PostMeltQuoteResponse.model_validate(return_dict)

    @async_set_httpx_client
    async def melt(
        self,
        quote: str,
        proofs: List[Proof],
        outputs: Optional[List[BlindedMessage]] = None,
    ) -> PostMeltQuoteResponse:
        """
        Accepts proofs and a lightning invoice to pay in exchange.
        """
        outputs = outputs or []
        payload = PostMeltRequest(quote=quote, inputs=proofs, outputs=outputs)

        def _meltrequest_include_fields(
            proofs: List[Proof], outputs: List[BlindedMessage]
        ):
            """strips away fields from the model that aren't necessary for the /melt"""
            proofs_include = {"id", "amount", "secret", "C", "witness"}
            outputs_include = {"id", "amount", "B_"}
            return {
                "quote": ...,
                "inputs": {i: proofs_include for i in range(len(proofs))},
                "outputs": {i: outputs_include for i in range(len(outputs))},
            }

        resp = await self.httpx.post(
            join(self.url, "v1/melt/bolt11"),
            json=payload.model_dump(include=_meltrequest_include_fields(proofs, outputs)),  # type: ignore
            timeout=None,
        )
        self.raise_on_error_request(resp)
        return_dict = resp.json()
        return PostMeltQuoteResponse.model_validate(return_dict)

    @async_set_httpx_client
    async def swap(
        self,
        proofs: List[Proof],
        outputs: List[BlindedMessage],
    ) -> List[BlindedSignature]:
        """Consume proofs and create new promises for the outputs."""
        logger.debug("Calling swap. POST /v1/swap")
        swap_payload = PostSwapRequest(inputs=proofs, outputs=outputs)

        # construct payload
        def _swaprequest_include_fields(proofs: List[Proof]):
            """strips away fields from the model that aren't necessary for /v1/swap"""
            proofs_include = {
                "id",
                "amount",
                "secret",
                "C",
                "witness",
            }
            return {
                "outputs": {i: {"id", "amount", "B_"} for i in range(len(outputs))},
                "inputs": {i: proofs_include for i in range(len(proofs))},
            }

        resp = await self.httpx.post(
            join(self.url, "v1/swap"),
            json=swap_payload.model_dump(include=_swaprequest_include_fields(proofs)),  # type: ignore
        )
        self.raise_on_error_request(resp)
        promises_dict = resp.json()
        mint_response = PostSwapResponse.model_validate(promises_dict)
        promises = mint_response.signatures

        if len(promises) == 0:
            raise Exception("received no signatures.")

        return promises

    @async_set_httpx_client
    async def check_proof_state(self, proofs: List[Proof]) -> PostCheckStateResponse:
        """
        Checks whether the secrets in proofs are already spent or not.
        """
        payload = PostCheckStateRequest(Ys=[p.Y for p in proofs])
        resp = await self.httpx.post(
            join(self.url, "v1/checkstate"),
            json=payload.model_dump(),
        )
        self.raise_on_error_request(resp)
        return PostCheckStateResponse.model_validate(resp.json())

    @async_set_httpx_client
    async def restore_promises(
        self, outputs: List[BlindedMessage]
    ) -> Tuple[List[BlindedMessage], List[BlindedSignature]]:
        """
        Asks the mint to restore promises corresponding to outputs.
        """
        payload = PostRestoreRequest(outputs=outputs)
        resp = await self.httpx.post(
            join(self.url, "v1/restore"),
            json=payload.model_dump(include={"outputs": {i: {"id", "amount", "B_"} for i in range(len(outputs))}}),  # type: ignore
        )
        self.raise_on_error_request(resp)
        response_dict = resp.json()
        returnObj = PostRestoreResponse.model_validate(response_dict)

        # BEGIN backwards compatibility < 0.15.1
        # if the mint returns promises, duplicate into signatures
        if returnObj.promises:
            returnObj.signatures = returnObj.promises
        # END backwards compatibility < 0.15.1

        return returnObj.outputs, returnObj.signatures
