"""
Minimal ABI encoding for the contract surfaces the queues touch.

Only flat argument lists (scalars and one-dimensional arrays) are
supported, which covers the token and stablecoin functions below.
"""

from typing import Any, List, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import (
    encode_hex,
    function_signature_to_4byte_selector,
    to_bytes,
    to_checksum_address,
)


# Stablecoin (EIP-3009)
TRANSFER_WITH_AUTHORIZATION = (
    "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
)

# Launch token
MINT = "mint(address,bytes32)"
BATCH_MINT = "batchMint(address[],bytes32[])"
HAS_MINTED = "hasMinted(bytes32)"
MINT_AMOUNT = "mintAmount()"
REMAINING_SUPPLY = "remainingSupply()"


def parse_argument_types(signature: str) -> List[str]:
    """Return the argument types of ``name(type1,type2)``."""
    start = signature.index("(")
    end = signature.rindex(")")
    inner = signature[start + 1:end].strip()
    if not inner:
        return []
    return [part.strip() for part in inner.split(",")]


def _normalize_arg(abi_type: str, value: Any) -> Any:
    if abi_type.endswith("[]"):
        inner = abi_type[:-2]
        return [_normalize_arg(inner, v) for v in value]
    if abi_type == "address":
        return to_checksum_address(value)
    if abi_type.startswith("bytes") and abi_type != "bytes":
        if isinstance(value, str):
            return to_bytes(hexstr=value)
        return bytes(value)
    if abi_type.startswith(("uint", "int")):
        return int(value)
    return value


def encode_call(signature: str, args: Sequence[Any] = ()) -> str:
    """Encode calldata for ``signature`` with ``args`` as a 0x hex string."""
    arg_types = parse_argument_types(signature)
    if len(arg_types) != len(args):
        raise ValueError(
            f"{signature} expects {len(arg_types)} arguments, got {len(args)}"
        )
    selector = function_signature_to_4byte_selector(signature)
    normalized = [_normalize_arg(t, a) for t, a in zip(arg_types, args)]
    return encode_hex(selector + encode(arg_types, normalized))


def decode_result(return_types: Sequence[str], data: str) -> Tuple[Any, ...]:
    """Decode an ``eth_call`` return value."""
    raw = to_bytes(hexstr=data) if data and data != "0x" else b""
    if not raw and return_types:
        raise ValueError("Empty return data (contract missing or call reverted)")
    return decode(list(return_types), raw)
