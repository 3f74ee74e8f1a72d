"""
Kind x action method table, event decoding and the built-in ABI.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

import pytest
import requests

from medchain_anchor.chain import adapter
from medchain_anchor.chain.abi import contract_abi, load_abi
from medchain_anchor.chain.evm import classify
from medchain_anchor.errors import AnchorError, ConfigurationError, Reverted, RpcTransient
from medchain_anchor.schemas import Action, Kind


def test_on_chain_kinds_have_every_action():
    for kind in (Kind.MEDICINE, Kind.STOCK, Kind.RELEASE, Kind.REMOVAL):
        assert adapter.supports(kind)
        for action in Action:
            assert adapter.method_for(kind, action)
            assert adapter.event_for(kind, action)


def test_release_maps_to_receipt_methods():
    assert adapter.method_for(Kind.RELEASE, Action.STORE) == "storeReceiptHash"
    assert adapter.method_for(Kind.RELEASE, Action.DELETE) == "deleteReceiptHash"
    assert adapter.event_for(Kind.RELEASE, Action.UPDATE) == "ReceiptHashUpdated"
    assert adapter.GETTERS[Kind.RELEASE] == "getReceiptHash"


def test_ledger_only_kinds_have_no_method():
    for kind in (Kind.USER, Kind.RESIDENT, Kind.STOCK_TRANSACTION):
        assert not adapter.supports(kind)
        with pytest.raises(ConfigurationError):
            adapter.method_for(kind, Action.STORE)


def test_event_names_round_trip():
    assert len(adapter.EVENT_KEYS) == 12
    assert adapter.parse_event_name("RemovalHashDeleted") == (Kind.REMOVAL, Action.DELETE)


def test_event_build_normalises_values():
    ev = adapter.ChainEvent.build(
        "StockHashUpdated",
        {"id": 7, "oldHash": b"\x01" * 32, "newHash": "0x" + "AB" * 32,
         "updatedBy": "0xF39Fd6e51aad88F6F4ce6aB8827279cffFb92266", "timestamp": 1_736_467_205},
        bytes(32), 12, "0x" + "cd" * 32, 3,
    )
    assert ev.kind == Kind.STOCK and ev.action == Action.UPDATE
    assert ev.data_hash == "0x" + "ab" * 32
    assert ev.old_hash == "0x" + "01" * 32
    assert ev.actor == "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
    assert ev.position == (12, 3)
    assert ev.payload()["old_hash"] == ev.old_hash


def test_abi_lists_all_contract_members():
    abi = contract_abi()
    names = {item["name"] for item in abi}
    for name in list(adapter.METHODS.values()) + list(adapter.EVENTS.values()):
        assert name in names
    for name in list(adapter.GETTERS.values()) + list(adapter.COUNTERS.values()):
        assert name in names
    stored = next(i for i in abi if i["name"] == "MedicineHashStored")
    assert [p["indexed"] for p in stored["inputs"]] == [True, False, True, False]


def test_abi_artifact_override(tmp_path):
    artifact = tmp_path / "deployed.json"
    artifact.write_text(json.dumps({"address": "0x0", "abi": [{"type": "function", "name": "x"}]}))
    assert load_abi(str(artifact)) == [{"type": "function", "name": "x"}]
    with pytest.raises(ConfigurationError):
        load_abi(str(tmp_path / "missing.json"))


def test_rpc_failures_are_classified():
    assert isinstance(classify(requests.exceptions.ConnectionError("refused")), RpcTransient)
    assert isinstance(classify(requests.exceptions.ReadTimeout("slow")), RpcTransient)
    assert isinstance(classify(ValueError("nonce too low")), RpcTransient)
    assert isinstance(classify(ValueError("insufficient funds for gas * price + value")), Reverted)
    reverted = classify(ValueError("execution reverted: Medicine hash already exists"))
    assert isinstance(reverted, Reverted)
    assert reverted.reason == "Medicine hash already exists"
    assert type(classify(RuntimeError("boom"))) is AnchorError


def test_http_status_classification():
    def http_error(status):
        response = requests.Response()
        response.status_code = status
        return requests.exceptions.HTTPError(response=response)

    assert isinstance(classify(http_error(429)), RpcTransient)
    assert isinstance(classify(http_error(502)), RpcTransient)
    assert isinstance(classify(http_error(401)), ConfigurationError)
