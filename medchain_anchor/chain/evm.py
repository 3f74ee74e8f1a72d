"""
chain/evm.py - MedicineInventory adapter using web3.py.

Connects to the node via JSON-RPC (HTTPProvider, PoA extra-data middleware),
loads the contract and maps every (kind, action) through chain/adapter.py.

web3's HTTP transport is blocking, so every call runs in the default
executor. Failures are mapped onto the anchor error kinds:
  connection error, timeout, HTTP 429/5xx, nonce too low -> RpcTransient
  ContractLogicError, AccessControl, insufficient funds  -> Reverted
  no receipt before the deadline                         -> Unconfirmed

Writes are split in two. prepare() preflights, takes the next nonce and signs;
broadcast() hands the raw bytes to the node and may be repeated with the same
bytes. The nonce is only touched from async code under the pipeline's signer
lock, never from an executor thread that may outlive its timeout.
"""
import asyncio
import functools
import logging
from typing import Optional

import requests
from web3 import Web3
from web3.exceptions import (
    BlockNotFound, ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError,
)
from web3.logs import DISCARD
from web3.middleware import ExtraDataToPOAMiddleware

from ..errors import (
    AnchorError, ConfigurationError, NotOnChain, Reverted, RpcTransient, Unconfirmed,
)
from ..schemas import ZERO_HASH, Action, Kind, hex32, lower_address
from .abi import load_abi
from .adapter import (
    COUNTERS, EVENTS, GETTERS, ChainClient, ChainEvent, ChainReceipt, ChainRecord, SignedTx,
    method_for,
)

log = logging.getLogger("anchor.chain.evm")

GAS_MARGIN = 1.30
GAS_PAD = 50_000
GAS_FALLBACK = 500_000

_TRANSIENT_TEXT = ("nonce too low", "already known", "replacement transaction underpriced",
                   "header not found", "timeout", "too many requests")


def _bytes32(value: str) -> bytes:
    return bytes.fromhex(hex32(value)[2:])


def _revert_reason(exc: Exception) -> str:
    text = getattr(exc, "message", None) or str(exc)
    for prefix in ("execution reverted: ", "VM Exception while processing transaction: reverted with reason string "):
        if prefix in text:
            text = text.split(prefix, 1)[1]
    return text.strip().strip("'\"") or "execution reverted"


def classify(exc: Exception) -> AnchorError:
    """Map a web3/requests failure onto exactly one anchor error kind."""
    if isinstance(exc, AnchorError):
        return exc
    if isinstance(exc, ContractLogicError):
        return Reverted(_revert_reason(exc))
    if isinstance(exc, TimeExhausted):
        return Unconfirmed(str(exc))
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
                        asyncio.TimeoutError)):
        return RpcTransient(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, requests.exceptions.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        if status == 429 or (status is not None and status >= 500):
            return RpcTransient(f"HTTP {status}")
        return ConfigurationError(f"RPC endpoint rejected the request: HTTP {status}")

    text = str(exc).lower()
    if "insufficient funds" in text:
        return Reverted("insufficient funds for gas")
    if "accesscontrol" in text or "execution reverted" in text:
        return Reverted(_revert_reason(exc))
    if any(marker in text for marker in _TRANSIENT_TEXT):
        return RpcTransient(str(exc))
    if isinstance(exc, Web3RPCError):
        return RpcTransient(str(exc))
    return AnchorError(f"{type(exc).__name__}: {exc}")


class EvmChainClient(ChainClient):

    def __init__(self, settings):
        if not settings.rpc_url or not settings.contract_address:
            raise ConfigurationError("RPC_URL and CONTRACT_ADDRESS are required for CHAIN_BACKEND=evm")
        self.settings = settings
        self.w3 = Web3(Web3.HTTPProvider(settings.rpc_url,
                                         request_kwargs={"timeout": settings.rpc_timeout}))
        self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.contract_address),
            abi=load_abi(settings.contract_abi_path),
        )
        self.contract_address = lower_address(settings.contract_address)
        # without a usable key the client is read-only (verify, history, sync)
        self.account = None
        if not settings.chain_problems():
            self.account = self.w3.eth.account.from_key(settings.signer_key)
            self.signer_address = lower_address(self.account.address)
        self.max_span = settings.event_page_span
        self.poll_interval = settings.receipt_poll_interval
        self._nonce: Optional[int] = None
        log.info("evm client: rpc=%s contract=%s signer=%s",
                 settings.rpc_url, self.contract_address, self.signer_address)

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
                timeout=self.settings.rpc_timeout,
            )
        except Exception as exc:
            raise classify(exc) from exc

    def _function(self, name: str, *args):
        return getattr(self.contract.functions, name)(*args)

    #  Write path

    def _sign_blocking(self, fn, nonce: int):
        gas_price = (Web3.to_wei(self.settings.gas_price_gwei, "gwei")
                     if self.settings.gas_price_gwei is not None else self.w3.eth.gas_price)
        base_tx = {"from": self.account.address, "nonce": nonce, "gasPrice": gas_price}

        try:
            est = fn.estimate_gas(base_tx)
            gas_limit = int(est * GAS_MARGIN) + GAS_PAD
        except ContractLogicError:
            raise
        except Exception as exc:
            log.debug("gas estimate failed (%s), using %d", exc, GAS_FALLBACK)
            gas_limit = GAS_FALLBACK

        tx = fn.build_transaction({**base_tx, "gas": gas_limit})
        return self.account.sign_transaction(tx)

    async def prepare(self, kind, action, entity_id, content_hash):
        if self.account is None:
            raise ConfigurationError("; ".join(self.settings.chain_problems()))
        kind, action = Kind(kind), Action(action)
        name = method_for(kind, action)
        args = (entity_id,) if action == Action.DELETE else (entity_id, _bytes32(content_hash))
        fn = self._function(name, *args)

        # preflight: surface revert reasons (duplicate, missing id, role) before signing
        await self._run(fn.call, {"from": self.account.address})
        if self._nonce is None:
            self._nonce = await self._run(
                self.w3.eth.get_transaction_count, self.account.address, "pending")
        nonce = self._nonce
        signed = await self._run(self._sign_blocking, fn, nonce)
        self._nonce = nonce + 1
        log.debug("signed %s id=%s nonce=%d", name, entity_id, nonce)
        return SignedTx(hex32(Web3.to_hex(signed.hash)), Web3.to_hex(signed.raw_transaction), nonce)

    async def discard(self, signed):
        # re-read the pending count on the next prepare
        self._nonce = None

    async def broadcast(self, signed):
        try:
            await self._run(self.w3.eth.send_raw_transaction, signed.raw)
        except RpcTransient as exc:
            text = str(exc).lower()
            if "already known" in text:
                return signed.tx_hash
            if "nonce too low" in text:
                self._nonce = None
                raise Reverted(f"nonce {signed.nonce} already used")
            raise
        except Reverted:
            # rejected before entering the pool, so the nonce is free again
            self._nonce = None
            raise
        log.info("broadcast tx=%s nonce=%s", signed.tx_hash[:18], signed.nonce)
        return signed.tx_hash

    #  Receipts

    def _decode(self, receipt) -> list[ChainEvent]:
        own_logs = [entry for entry in receipt["logs"]
                    if entry["address"].lower() == self.contract_address]
        events = []
        for name in EVENTS.values():
            for ev in getattr(self.contract.events, name)().process_receipt(
                    {"logs": own_logs}, errors=DISCARD):
                events.append(self._event(ev))
        return sorted(events, key=lambda e: e.position)

    def _event(self, ev) -> ChainEvent:
        return ChainEvent.build(ev["event"], dict(ev["args"]), ev["transactionHash"],
                                ev["blockNumber"], ev["blockHash"], ev["logIndex"], ev["address"])

    def _receipt(self, raw) -> ChainReceipt:
        return ChainReceipt(
            tx_hash=hex32(raw["transactionHash"]),
            block_number=int(raw["blockNumber"]),
            block_hash=hex32(raw["blockHash"]),
            gas_used=int(raw["gasUsed"]),
            status=int(raw["status"]),
            events=self._decode(raw) if int(raw["status"]) == 1 else [],
        )

    def _fetch_receipt(self, tx_hash: str):
        try:
            return self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def get_receipt(self, tx_hash):
        raw = await self._run(self._fetch_receipt, tx_hash)
        return self._receipt(raw) if raw is not None else None

    async def await_receipt(self, tx_hash, confirmations=1, deadline=300.0):
        loop = asyncio.get_running_loop()
        end = loop.time() + deadline
        while True:
            raw = await self._run(self._fetch_receipt, tx_hash)
            if raw is not None:
                head = await self.current_block()
                if head - int(raw["blockNumber"]) + 1 >= confirmations:
                    receipt = self._receipt(raw)
                    if receipt.status != 1:
                        log.warning("tx %s reverted gasUsed=%s", tx_hash[:18], receipt.gas_used)
                        raise Reverted(f"transaction {tx_hash} reverted")
                    return receipt
            if loop.time() >= end:
                raise Unconfirmed(f"no receipt for {tx_hash} with {confirmations} confirmations "
                                  f"within {deadline}s")
            await asyncio.sleep(self.poll_interval)

    #  Reads

    async def get_hash(self, kind, entity_id):
        kind = Kind(kind)
        if not self.supports(kind):
            raise NotOnChain(f"{kind.value} is not anchored on chain")
        try:
            data_hash, added_by, ts, exists = await self._run(
                self._function(GETTERS[kind], entity_id).call)
        except Reverted as exc:
            raise NotOnChain(f"{kind.value} {entity_id}: {exc.reason}")
        h = hex32(data_hash)
        record = ChainRecord(
            hash=None if h == ZERO_HASH else h,
            added_by=lower_address(added_by) if int(added_by, 16) else None,
            timestamp=int(ts),
            exists=bool(exists),
        )
        if not record.exists:
            raise NotOnChain(f"{kind.value} {entity_id} does not exist on chain",
                             record=record if record.hash else None)
        return record

    async def get_count(self, kind):
        return int(await self._run(self._function(COUNTERS[Kind(kind)]).call))

    async def query_events(self, event_name, from_block, to_block):
        if to_block - from_block + 1 > self.max_span:
            raise ValueError(f"block range {from_block}-{to_block} exceeds span {self.max_span}")
        event = getattr(self.contract.events, event_name)()
        logs = await self._run(event.get_logs, from_block=from_block, to_block=to_block)
        return sorted((self._event(ev) for ev in logs), key=lambda e: e.position)

    async def current_block(self):
        return int(await self._run(lambda: self.w3.eth.block_number))

    def _block_hash(self, number: int) -> Optional[str]:
        try:
            return hex32(self.w3.eth.get_block(number)["hash"])
        except BlockNotFound:
            return None

    async def block_hash(self, number):
        if number < 0:
            return None
        return await self._run(self._block_hash, number)
