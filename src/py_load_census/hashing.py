"""
Deterministic digests used to build the variables table's uniqueness key.

`concept` and `attributes` are routinely larger than the 2712 byte limit on a
PostgreSQL btree index row, so the unique constraint is declared over digests
of those columns instead of the raw values. The functions here compute the
same digests as the `immutable_md5` and `immutable_array_digest` SQL functions
installed by `schemas.METADATA_SCHEMA`, and must stay byte-for-byte identical
to them.
"""

import hashlib
from typing import TYPE_CHECKING, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from py_load_census.models import Variable

DedupKey = Tuple[str, str, str, str]


def text_digest(value: Optional[str]) -> str:
    """Returns the md5 hex digest of a text value. `None` hashes as ''."""
    return hashlib.md5((value or "").encode("utf-8")).hexdigest()


def encode_array(values: Optional[Sequence[Optional[str]]]) -> str:
    """
    Encodes an array as a single string without delimiter ambiguity.

    Every element is written as `<length>:<element>`, so ["a,b"] and ["a", "b"]
    encode differently, and [] encodes as '' while [""] encodes as '0:'.
    Lengths count characters, like PostgreSQL's `length()` on UTF-8 text.
    """
    if not values:
        return ""
    parts = []
    for value in values:
        element = value or ""
        parts.append(f"{len(element)}:{element}")
    return "".join(parts)


def array_digest(values: Optional[Sequence[Optional[str]]]) -> str:
    """Returns the md5 hex digest of an encoded array. `None` hashes like []."""
    return text_digest(encode_array(values))


def first_element(values: Optional[Sequence[Optional[str]]]) -> str:
    """Returns the first element of a list, or '' if it is absent or empty."""
    if not values:
        return ""
    return values[0] or ""


def variable_dedup_key(variable: "Variable") -> DedupKey:
    """
    Returns the key under which two variables collapse into one row:
    (name, attributes digest, concept digest, first group element).

    Only the first element of `group` takes part. In the Census API a variable
    almost always belongs to a single group, and the rare long group lists
    share their first element whenever the rest of the key matches.
    """
    return (
        variable.name,
        array_digest(variable.attributes),
        text_digest(variable.concept),
        first_element(variable.group),
    )
