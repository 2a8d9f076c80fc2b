"""
ABI fragments for the OTC swap escrow contract and ERC-20 metadata reads.

Only the read functions and events the engine uses are listed.
"""

from __future__ import annotations


def _fn(name, inputs, outputs):
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": inputs,
        "outputs": outputs,
    }


def _arg(name, typ, indexed=None):
    arg = {"name": name, "type": typ}
    if indexed is not None:
        arg["indexed"] = indexed
    return arg


def _event(name, inputs):
    return {"type": "event", "name": name, "anonymous": False, "inputs": inputs}


_UINT = "uint256"
_ADDR = "address"

OTC_SWAP_ABI = [
    _fn("firstOrderId", [], [_arg("", _UINT)]),
    _fn("nextOrderId", [], [_arg("", _UINT)]),
    _fn("ORDER_EXPIRY", [], [_arg("", _UINT)]),
    _fn("GRACE_PERIOD", [], [_arg("", _UINT)]),
    _fn("orderCreationFeeAmount", [], [_arg("", _UINT)]),
    _fn(
        "orders",
        [_arg("", _UINT)],
        [
            _arg("maker", _ADDR),
            _arg("taker", _ADDR),
            _arg("sellToken", _ADDR),
            _arg("sellAmount", _UINT),
            _arg("buyToken", _ADDR),
            _arg("buyAmount", _UINT),
            _arg("timestamp", _UINT),
            _arg("status", "uint8"),
            _arg("orderCreationFee", _UINT),
            _arg("tries", _UINT),
        ],
    ),
    _event("OrderCreated", [
        _arg("orderId", _UINT, True),
        _arg("maker", _ADDR, True),
        _arg("taker", _ADDR, True),
        _arg("sellToken", _ADDR, False),
        _arg("sellAmount", _UINT, False),
        _arg("buyToken", _ADDR, False),
        _arg("buyAmount", _UINT, False),
        _arg("timestamp", _UINT, False),
        _arg("fee", _UINT, False),
    ]),
    _event("OrderFilled", [
        _arg("orderId", _UINT, True),
        _arg("maker", _ADDR, True),
        _arg("taker", _ADDR, True),
        _arg("sellToken", _ADDR, False),
        _arg("sellAmount", _UINT, False),
        _arg("buyToken", _ADDR, False),
        _arg("buyAmount", _UINT, False),
        _arg("timestamp", _UINT, False),
    ]),
    _event("OrderCanceled", [
        _arg("orderId", _UINT, True),
        _arg("maker", _ADDR, True),
        _arg("timestamp", _UINT, False),
    ]),
    _event("OrderCleanedUp", [
        _arg("orderId", _UINT, True),
        _arg("maker", _ADDR, True),
        _arg("timestamp", _UINT, False),
    ]),
    _event("RetryOrder", [
        _arg("oldOrderId", _UINT, True),
        _arg("newOrderId", _UINT, True),
        _arg("maker", _ADDR, True),
        _arg("tries", _UINT, False),
        _arg("timestamp", _UINT, False),
    ]),
    _event("CleanupFeesDistributed", [
        _arg("recipient", _ADDR, True),
        _arg("amount", _UINT, False),
        _arg("timestamp", _UINT, False),
    ]),
    _event("CleanupError", [
        _arg("orderId", _UINT, True),
        _arg("reason", "string", False),
        _arg("timestamp", _UINT, False),
    ]),
]

ERC20_METADATA_ABI = [
    _fn("decimals", [], [_arg("", "uint8")]),
    _fn("symbol", [], [_arg("", "string")]),
    _fn("name", [], [_arg("", "string")]),
]


def event_abis(abi=OTC_SWAP_ABI):
    """Event entries of ``abi`` keyed by event name."""
    return {entry["name"]: entry for entry in abi if entry["type"] == "event"}
