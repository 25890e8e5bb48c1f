"""Dataset filters evaluated against a PBI.

A dataset carries a list of filters.  Properties inside one filter are
combined with AND, separate filters with OR.  Supported properties:

* ``zm`` compared with ``<``, ``<=``, ``>``, ``>=`` (ZMW range)
* ``zm`` with ``==`` and ``Modulo``/``Hash`` attributes (ZMW downsampling)
* ``rq`` compared with any of the above plus ``==``/``!=`` (read quality)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from zmw_align.models import FilterError
from zmw_align.pbi import PbiBasicData

log = logging.getLogger(__name__)

# Operator spellings found in dataset XML, normalised to Python-like symbols
_OPERATORS = {
    "<": "<", "lt": "<", "&lt;": "<",
    "<=": "<=", "lte": "<=", "&lt;=": "<=",
    ">": ">", "gt": ">", "&gt;": ">",
    ">=": ">=", "gte": ">=", "&gt;=": ">=",
    "=": "==", "==": "==", "eq": "==",
    "!=": "!=", "ne": "!=",
}

_HASHES = {"uint32cast", "boosthashcombine"}

_U64 = np.uint64
_BOOST_GOLDEN = _U64(0x9E3779B9)


@dataclass
class FilterProperty:
    """One ``<Property Name=... Operator=... Value=...>`` element."""

    name: str
    operator: str
    value: str
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass
class DatasetFilter:
    """One ``<Filter>`` element: all properties must hold."""

    properties: list[FilterProperty] = field(default_factory=list)


def normalise_operator(op: str) -> str:
    try:
        return _OPERATORS[op.strip().lower()]
    except KeyError:
        raise FilterError(f"Unsupported filter operator: {op!r}") from None


def _parse_int(prop: FilterProperty) -> int:
    value = prop.value.strip()
    if not value.isdigit():
        raise FilterError(f"Filter value for '{prop.name}' must be a non-negative integer, got {prop.value!r}")
    return int(value)


def _parse_float(prop: FilterProperty) -> float:
    try:
        return float(prop.value)
    except ValueError:
        raise FilterError(f"Filter value for '{prop.name}' must be a number, got {prop.value!r}") from None


def _compare(column: np.ndarray, op: str, value) -> np.ndarray:
    if op == "<":
        return column < value
    if op == "<=":
        return column <= value
    if op == ">":
        return column > value
    if op == ">=":
        return column >= value
    if op == "==":
        return column == value
    return column != value


def uint32cast_hash(hole_numbers: np.ndarray) -> np.ndarray:
    return hole_numbers.astype(np.int64).astype(np.uint32)


def boost_hash_combine(hole_numbers: np.ndarray) -> np.ndarray:
    """Hash of a hole number as two 16-bit halves folded with boost::hash_combine."""
    zm = hole_numbers.astype(np.int64).astype(np.uint32).astype(_U64)
    upper = (zm >> _U64(16)) & _U64(0xFFFF)
    lower = zm & _U64(0xFFFF)
    seed = np.zeros(len(zm), dtype=_U64)
    with np.errstate(over="ignore"):
        for part in (upper, lower):
            seed ^= part + _BOOST_GOLDEN + (seed << _U64(6)) + (seed >> _U64(2))
    return seed.astype(np.uint32)


def _modulo_mask(prop: FilterProperty, pbi: PbiBasicData) -> np.ndarray:
    hash_name = prop.attributes.get("Hash", "")
    if hash_name.lower() not in _HASHES:
        raise FilterError(f"Unsupported hash type: {hash_name}")
    try:
        modulus = int(prop.attributes["Modulo"])
    except ValueError:
        raise FilterError(f"Modulo must be an integer, got {prop.attributes['Modulo']!r}") from None
    if modulus <= 0:
        raise FilterError(f"Modulo must be positive, got {modulus}")
    remainder = _parse_int(prop)
    if hash_name.lower() == "uint32cast":
        hashed = uint32cast_hash(pbi.hole_number)
    else:
        hashed = boost_hash_combine(pbi.hole_number)
    return (hashed % np.uint32(modulus)) == remainder


def _property_mask(prop: FilterProperty, pbi: PbiBasicData) -> np.ndarray:
    op = normalise_operator(prop.operator)
    if prop.name == "zm":
        if op == "==" and "Modulo" in prop.attributes:
            return _modulo_mask(prop, pbi)
        if op not in ("<", "<=", ">", ">="):
            raise FilterError(
                "Unsupported operator type for ZMW range filter. Supported are: <=, <, >, >="
            )
        return _compare(pbi.hole_number, op, _parse_int(prop))
    if prop.name == "rq":
        return _compare(pbi.read_qual, op, _parse_float(prop))
    raise FilterError(f"Unsupported filter property: {prop.name!r}")


def accepted_rows(filters: list[DatasetFilter], pbi: PbiBasicData) -> np.ndarray:
    """Boolean mask of PBI rows accepted by the dataset filters.

    An empty filter list accepts everything.
    """
    if not filters:
        return np.ones(len(pbi), dtype=bool)
    mask = np.zeros(len(pbi), dtype=bool)
    for flt in filters:
        sub = np.ones(len(pbi), dtype=bool)
        for prop in flt.properties:
            sub &= _property_mask(prop, pbi)
        mask |= sub
    return mask


def describe_filters(filters: list[DatasetFilter]) -> None:
    """Validate the ``zm`` properties and log the ZMW range and downsampling."""
    from_zmw = to_zmw = None
    modulus = None
    for flt in filters:
        for prop in flt.properties:
            op = normalise_operator(prop.operator)
            if prop.name != "zm":
                continue
            if op == "==" and "Modulo" in prop.attributes:
                try:
                    modulus = int(prop.attributes["Modulo"])
                except ValueError:
                    raise FilterError(f"Modulo must be an integer, got {prop.attributes['Modulo']!r}") from None
                continue
            value = _parse_int(prop)
            if op == "<=":
                to_zmw = value + 1
            elif op == "<":
                to_zmw = value
            elif op == ">":
                from_zmw = value
            elif op == ">=":
                from_zmw = value - 1
            else:
                raise FilterError(
                    "Unsupported operator type for ZMW range filter. Supported are: <=, <, >, >="
                )
    if from_zmw is not None and to_zmw is not None:
        log.info("ZMW filter range (%d,%d)", from_zmw, to_zmw)
    if modulus:
        log.info("ZMW downsample %f%%", 100.0 / modulus)
