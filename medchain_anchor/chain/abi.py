"""
chain/abi.py - ABI of the MedicineInventory contract, built from its naming scheme.

For each tag in {Medicine, Stock, Receipt, Removal} the contract exposes
store/update/delete/get/verify/count functions and Stored/Updated/Deleted
events. An artifact with an "abi" key (CONTRACT_ABI_PATH) overrides this.
"""
import json
from pathlib import Path
from typing import Optional

from ..errors import ConfigurationError

CONTRACT_TAGS = ("Medicine", "Stock", "Receipt", "Removal")


def _param(name, type_, indexed=None):
    p = {"name": name, "type": type_, "internalType": type_}
    if indexed is not None:
        p["indexed"] = indexed
    return p


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "inputs": list(inputs),
        "outputs": list(outputs),
        "stateMutability": mutability,
    }


def _event(name, inputs):
    return {"type": "event", "name": name, "inputs": list(inputs), "anonymous": False}


def contract_abi() -> list[dict]:
    abi = []
    for tag in CONTRACT_TAGS:
        abi += [
            _fn(f"store{tag}Hash", [_param("id", "uint256"), _param("dataHash", "bytes32")]),
            _fn(f"update{tag}Hash", [_param("id", "uint256"), _param("newHash", "bytes32")]),
            _fn(f"delete{tag}Hash", [_param("id", "uint256")]),
            _fn(f"get{tag}Hash", [_param("id", "uint256")],
                [_param("", "bytes32"), _param("", "address"),
                 _param("", "uint256"), _param("", "bool")], "view"),
            _fn(f"verify{tag}Hash", [_param("id", "uint256"), _param("dataHash", "bytes32")],
                [_param("", "bool")], "view"),
            _fn(f"get{tag}Count", [], [_param("", "uint256")], "view"),
            _event(f"{tag}HashStored", [
                _param("id", "uint256", True),
                _param("dataHash", "bytes32", False),
                _param("addedBy", "address", True),
                _param("timestamp", "uint256", False),
            ]),
            _event(f"{tag}HashUpdated", [
                _param("id", "uint256", True),
                _param("oldHash", "bytes32", False),
                _param("newHash", "bytes32", False),
                _param("updatedBy", "address", True),
                _param("timestamp", "uint256", False),
            ]),
            _event(f"{tag}HashDeleted", [
                _param("id", "uint256", True),
                _param("deletedBy", "address", True),
                _param("timestamp", "uint256", False),
            ]),
        ]
    return abi


def load_abi(path: Optional[str] = None) -> list[dict]:
    """Built-in ABI, or the "abi" of a deployment artifact (deployed.json / hardhat output)."""
    if not path:
        return contract_abi()
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"CONTRACT_ABI_PATH {path} does not exist")
    data = json.loads(p.read_text())
    abi = data.get("abi") if isinstance(data, dict) else data
    if not isinstance(abi, list):
        raise ConfigurationError(f"{path} has no 'abi' list")
    return abi
