import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from py_load_census.models import ApiPath, Geography, Variable

# `label` values look like "Estimate!!Total:!!Male:" and nest outer to inner.
LABEL_SPLIT_RE = re.compile(r":?!!")
YEAR_ONLY_RE = re.compile(r"^\d{4}$")


class ParseError(ValueError):
    """Raised when an API payload does not have the expected shape."""


def split_label(value: Any) -> List[str]:
    """Splits a `label` string on '!!' or ':!!' after trimming colons from both ends."""
    if not isinstance(value, str):
        raise ParseError(f"Expected 'label' to be a string but got: {value!r}")
    return LABEL_SPLIT_RE.split(value.strip(":"))


def split_comma_separated(value: Any, field_name: str) -> Optional[List[str]]:
    """Splits a comma-separated string such as `group` or `attributes`."""
    if value is None:
        return None
    if isinstance(value, list):
        return [str(v) for v in value]
    if not isinstance(value, str):
        raise ParseError(f"Expected '{field_name}' to be comma-separated words but got: {value!r}")
    return value.strip(" ").split(",")


def parse_reference_date(value: Any) -> Optional[date]:
    """Parses a `referenceDate` of the form 'YYYY-MM-DD' or just 'YYYY'."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError(f"Expected 'referenceDate' to be a string but got: {value!r}")
    if YEAR_ONLY_RE.match(value):
        return date(int(value), 1, 1)
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as e:
        raise ParseError(f"Invalid 'referenceDate': {value!r}") from e


def parse_wildcard(value: Any) -> Optional[List[str]]:
    """
    Parses `wildcard`, which is either a list of geography names or `false`.
    `false` becomes an empty list; `true` has no meaning and is rejected.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        if value:
            raise ParseError("Boolean value `true` is not allowed for `wildcard`")
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    raise ParseError(f"Expected 'wildcard' to be an array of strings or a boolean but got: {value!r}")


def parse_limit(value: Any) -> Optional[int]:
    """Parses `limit`, which is an integer or a string that may carry stray quotes."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ParseError(f"Invalid value for 'limit' field: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip('"'))
        except ValueError as e:
            raise ParseError(f"Invalid value for 'limit' field: {value}") from e
    raise ParseError(f"Invalid value for 'limit' field: {value!r}")


def _optional_str(item: Dict[str, Any], key: str) -> Optional[str]:
    value = item.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def _optional_bool(item: Dict[str, Any], key: str) -> Optional[bool]:
    value = item.get(key)
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ParseError(f"Expected '{key}' to be a boolean but got: {value!r}")


class ApiIndexParser:
    """
    Parses the top-level index at https://api.census.gov/data.json into
    `ApiPath` records.

    Entries missing a link, title or description cannot be stored and are
    skipped with a warning rather than failing the whole index.
    """

    REQUIRED_FIELDS = ("c_geographyLink", "c_variablesLink", "title", "description")

    def parse(self, payload: Any) -> List[ApiPath]:
        if not isinstance(payload, dict) or not isinstance(payload.get("dataset"), list):
            raise ParseError("Expected the API index to be an object with a 'dataset' array.")

        api_paths: List[ApiPath] = []
        skipped = 0
        for entry in payload["dataset"]:
            if not isinstance(entry, dict):
                skipped += 1
                continue
            missing = [f for f in self.REQUIRED_FIELDS if not isinstance(entry.get(f), str)]
            if missing:
                logging.warning(
                    f"Skipping API index entry '{entry.get('title', '<untitled>')}': missing {missing}"
                )
                skipped += 1
                continue

            vintage = entry.get("c_vintage")
            if vintage is not None and not isinstance(vintage, int):
                try:
                    vintage = int(vintage)
                except (TypeError, ValueError):
                    logging.warning(f"Skipping API index entry with invalid c_vintage: {vintage!r}")
                    skipped += 1
                    continue

            api_paths.append(
                ApiPath(
                    c_vintage=vintage,
                    c_dataset=[str(s) for s in entry.get("c_dataset") or []],
                    c_geography_link=entry["c_geographyLink"],
                    c_variables_link=entry["c_variablesLink"],
                    title=entry["title"],
                    description=entry["description"],
                )
            )

        logging.info(f"Parsed {len(api_paths)} API paths from the index ({skipped} skipped).")
        return api_paths


class VariablesParser:
    """
    Parses an endpoint's variables.json. The variable name is the key of each
    item in the top-level `variables` map; the value holds the other fields.
    """

    def parse(self, payload: Any) -> List[Variable]:
        if not isinstance(payload, dict) or not isinstance(payload.get("variables"), dict):
            raise ParseError("Expected variables.json to be an object with a 'variables' map.")

        variables = []
        for name, item in payload["variables"].items():
            if not name:
                raise ParseError("Variable names must not be empty.")
            if not isinstance(item, dict):
                raise ParseError(f"Expected variable '{name}' to be an object.")
            if "label" not in item:
                raise ParseError(f"Variable '{name}' has no 'label'.")

            variables.append(
                Variable(
                    name=name,
                    label=split_label(item["label"]),
                    concept=_optional_str(item, "concept"),
                    required=_optional_str(item, "required"),
                    predicate_type=_optional_str(item, "predicateType"),
                    group=split_comma_separated(item.get("group"), "group"),
                    limit=parse_limit(item.get("limit")),
                    predicate_only=_optional_bool(item, "predicateOnly"),
                    attributes=split_comma_separated(item.get("attributes"), "attributes"),
                )
            )
        return variables


class GeographyParser:
    """Parses an endpoint's geography.json. A missing `fips` array means no geographies."""

    def parse(self, payload: Any) -> List[Geography]:
        if not isinstance(payload, dict):
            raise ParseError("Expected geography.json to be an object.")

        geographies = []
        for item in payload.get("fips") or []:
            if not isinstance(item, dict):
                raise ParseError(f"Expected each 'fips' entry to be an object but got: {item!r}")
            name = item.get("name")
            if not isinstance(name, str) or not name:
                raise ParseError(f"Geography entry has no name: {item!r}")

            requires = item.get("requires")
            if requires is not None and not isinstance(requires, list):
                raise ParseError(f"Expected 'requires' of '{name}' to be an array.")

            geographies.append(
                Geography(
                    name=name,
                    geo_level_display=_optional_str(item, "geoLevelDisplay"),
                    reference_date=parse_reference_date(item.get("referenceDate")),
                    requires=[str(r) for r in requires] if requires is not None else None,
                    wildcard=parse_wildcard(item.get("wildcard")),
                    limit=parse_limit(item.get("limit")),
                    geo_level_id=_optional_str(item, "geoLevelId"),
                    optional_with_wildcard_for=_optional_str(item, "optionalWithWCFor"),
                )
            )
        return geographies
