"""Bank names, Modbus reference numbers and cell values: parsing, validation, display."""

import re

from .errors import InvalidOperation
from .types import MAX_ADDRESS, MAX_REGISTER_VALUE, RegisterBank

_BANK_ALIASES: dict[str, RegisterBank] = {
    "coil": RegisterBank.COIL,
    "coils": RegisterBank.COIL,
    "co": RegisterBank.COIL,
    "0x": RegisterBank.COIL,
    "discrete_input": RegisterBank.DISCRETE_INPUT,
    "discrete_inputs": RegisterBank.DISCRETE_INPUT,
    "di": RegisterBank.DISCRETE_INPUT,
    "1x": RegisterBank.DISCRETE_INPUT,
    "input_register": RegisterBank.INPUT_REGISTER,
    "input_registers": RegisterBank.INPUT_REGISTER,
    "ir": RegisterBank.INPUT_REGISTER,
    "3x": RegisterBank.INPUT_REGISTER,
    "holding_register": RegisterBank.HOLDING_REGISTER,
    "holding_registers": RegisterBank.HOLDING_REGISTER,
    "hr": RegisterBank.HOLDING_REGISTER,
    "4x": RegisterBank.HOLDING_REGISTER,
}

# Leading digit of a Modbus reference / display address for each bank
_BANK_PREFIX: dict[RegisterBank, int] = {
    RegisterBank.COIL: 0,
    RegisterBank.DISCRETE_INPUT: 1,
    RegisterBank.INPUT_REGISTER: 3,
    RegisterBank.HOLDING_REGISTER: 4,
}
_PREFIX_BANK = {v: k for k, v in _BANK_PREFIX.items()}

_REFERENCE_PATTERN = re.compile(r"^([0134])(\d{4,5})$")


def parse_bank(raw: str) -> RegisterBank:
    """
    Resolve a bank name or alias (``hr``, ``coils``, ``4x``, ...) to a RegisterBank.

    Raises InvalidOperation for unknown names.
    """
    key = raw.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return _BANK_ALIASES[key]
    except KeyError:
        raise InvalidOperation(f"Unknown register bank: {raw!r}") from None


def parse_reference(raw: str) -> tuple[RegisterBank, int]:
    """
    Convert a 1-based Modbus reference number (``40011``, ``400011``, ``00006``)
    to (bank, 0-based address).
    """
    m = _REFERENCE_PATTERN.match(raw.strip())
    if not m:
        raise InvalidOperation(f"Malformed Modbus reference: {raw!r}")
    bank = _PREFIX_BANK[int(m.group(1))]
    number = int(m.group(2))
    if number < 1 or number - 1 > MAX_ADDRESS:
        raise InvalidOperation(f"Modbus reference out of range: {raw!r}", bank=bank.value)
    return bank, number - 1


def format_address(bank: RegisterBank, address: int) -> str:
    """Display form used in the queue view, e.g. ``0x4000A`` for holding register 10."""
    return f"0x{_BANK_PREFIX[bank]}{address:04X}"


def check_address(bank: RegisterBank, address: int, count: int = 1) -> None:
    """Raise InvalidOperation unless [address, address + count) lies inside the bank."""
    if count < 1:
        raise InvalidOperation(f"count must be >= 1, got {count}", bank=bank.value, address=address)
    if address < 0 or address + count - 1 > MAX_ADDRESS:
        raise InvalidOperation(
            f"Address range {address}..{address + count - 1} outside 0..{MAX_ADDRESS}",
            bank=bank.value,
            address=address,
        )


def check_writable(bank: RegisterBank, address: int | None = None) -> None:
    if not bank.is_writable:
        raise InvalidOperation(f"{bank.value} is read-only", bank=bank.value, address=address)


def parse_bool(value: str) -> bool:
    """Parse boolean value from string."""
    v = value.lower().strip()
    if v in ("true", "1", "on", "yes"):
        return True
    if v in ("false", "0", "off", "no"):
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def parse_int(value: str, signed: bool = False) -> int:
    """Parse a 16-bit integer from string, supporting 0x hex."""
    v = value.strip()
    num = int(v, 16) if v.lower().startswith("0x") else int(v)
    if signed:
        if not (-32768 <= num <= 32767):
            raise ValueError(f"Signed 16-bit integer out of range: {num}")
    elif not (0 <= num <= MAX_REGISTER_VALUE):
        raise ValueError(f"Unsigned 16-bit integer out of range: {num}")
    return num


def parse_value(bank: RegisterBank, raw: str, signed: bool = False) -> bool | int:
    """Parse a value typed by the operator for the given bank."""
    if bank.is_bit:
        return parse_bool(raw)
    num = parse_int(raw, signed)
    return num + 65536 if num < 0 else num


def coerce_value(bank: RegisterBank, value: bool | int, address: int | None = None) -> bool | int:
    """Normalize a value for the bank: bool for bit banks, unsigned 16-bit int for word banks."""
    if bank.is_bit:
        if isinstance(value, bool):
            return value
        if value in (0, 1):
            return bool(value)
        raise InvalidOperation(f"Bit value must be 0/1 or bool, got {value!r}", bank=bank.value, address=address)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidOperation(f"Register value must be an int, got {value!r}", bank=bank.value, address=address)
    if not (0 <= value <= MAX_REGISTER_VALUE):
        raise InvalidOperation(
            f"Unsigned 16-bit value out of range: {value}",
            bank=bank.value,
            address=address,
        )
    return value
