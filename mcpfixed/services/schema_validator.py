# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/schema_validator.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

JSON Schema validation and schema drift detection.

Validation collects every violated constraint rather than the single best
match, so a rejected call names all offending fields at once. Validator
selection is cached per canonical schema document.

Drift detection compares the stored parameter/response schemas of an interface
with the live operation shape:

* parameters: a removed required property, a retyped property, a new required
  property and a property that became required are breaking; new optional
  properties, removed optional properties and relaxed requirements are
  compatible.
* response: a promised property that disappeared or changed type is breaking;
  new properties are compatible.

Examples:
    >>> schema = {"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]}
    >>> validate_instance({"query": "docs"}, schema)
    []
    >>> [v.path for v in validate_instance({"query": 123}, schema)]
    ['query']
    >>> [v.message for v in validate_instance({}, schema)]
    ["'query' is a required property"]
"""

# Standard
from functools import lru_cache
import logging
from typing import Any, Dict, List, Optional, Tuple

# Third-Party
import jsonschema
from jsonschema import Draft4Validator, Draft6Validator, Draft7Validator, validators
import orjson

# First-Party
from mcpfixed.errors import InterfaceValidationError
from mcpfixed.schemas import SchemaCheck, SchemaDiff, SchemaViolation

logger = logging.getLogger(__name__)


@lru_cache(maxsize=256)
def _get_validator_class_and_check(schema_json: str) -> Tuple[type, dict]:
    """Cache schema validation and validator class selection.

    Supports multiple JSON Schema drafts by using fallback validators when the
    auto-detected validator rejects the schema (e.g. Draft 4 style boolean
    ``exclusiveMinimum``).

    Args:
        schema_json: Canonical JSON string of the schema (used as cache key).

    Returns:
        Tuple of (validator_class, schema_dict) ready for instantiation.

    Raises:
        jsonschema.exceptions.SchemaError: If no supported draft accepts the schema.
    """
    schema = orjson.loads(schema_json)

    validator_cls = validators.validator_for(schema)
    try:
        validator_cls.check_schema(schema)
        return validator_cls, schema
    except jsonschema.exceptions.SchemaError:
        pass

    for fallback_cls in [Draft7Validator, Draft6Validator, Draft4Validator]:
        try:
            fallback_cls.check_schema(schema)
            return fallback_cls, schema
        except jsonschema.exceptions.SchemaError:
            continue

    validator_cls.check_schema(schema)
    return validator_cls, schema


def _canonicalize_schema(schema: dict) -> str:
    """Create a canonical JSON string of a schema for use as a cache key.

    Args:
        schema: The JSON Schema dictionary.

    Returns:
        Canonical JSON string with sorted keys.

    Examples:
        >>> _canonicalize_schema({"b": 1, "a": 2})
        '{"a":2,"b":1}'
    """
    return orjson.dumps(schema, option=orjson.OPT_SORT_KEYS).decode()


def _format_path(path) -> str:
    """Join a jsonschema error path into dotted form.

    Args:
        path: Deque of keys/indexes.

    Returns:
        str: Dotted path, '' for the root.
    """
    return ".".join(str(part) for part in path)


def check_schema(schema: Any, label: str = "schema") -> None:
    """Ensure a document is a well-formed JSON Schema.

    Args:
        schema: Candidate schema document.
        label: Name used in the error message.

    Raises:
        InterfaceValidationError: If the document is not a JSON object or not a
            valid schema under any supported draft.

    Examples:
        >>> check_schema({"type": "object"})
        >>> try:
        ...     check_schema({"type": "nope"}, "parameters")
        ... except InterfaceValidationError as e:
        ...     print(e.error_type)
        ValidationError
    """
    if not isinstance(schema, dict):
        raise InterfaceValidationError(f"Invalid {label}: must be a JSON object", violations=[{"path": "", "message": "schema must be a JSON object"}])
    try:
        _get_validator_class_and_check(_canonicalize_schema(schema))
    except jsonschema.exceptions.SchemaError as e:
        path = _format_path(e.absolute_path)
        raise InterfaceValidationError(f"Invalid {label}: {e.message}", violations=[{"path": path, "message": e.message}]) from e


def validate_instance(instance: Any, schema: Dict[str, Any]) -> List[SchemaViolation]:
    """Validate a value and return every violation.

    Args:
        instance: Value to validate.
        schema: JSON Schema (already known to be well-formed).

    Returns:
        List[SchemaViolation]: All violations, ordered by path; empty when valid.
    """
    if not schema:
        return []
    validator_cls, checked_schema = _get_validator_class_and_check(_canonicalize_schema(schema))
    # Fresh validator instance per call
    validator = validator_cls(checked_schema)
    violations = [SchemaViolation(path=_format_path(err.absolute_path), message=err.message, validator=str(err.validator)) for err in validator.iter_errors(instance)]
    violations.sort(key=lambda v: (v.path, v.message))
    return violations


def check(instance: Any, schema: Dict[str, Any]) -> SchemaCheck:
    """Validate a value and wrap the outcome.

    Args:
        instance: Value to validate.
        schema: JSON Schema.

    Returns:
        SchemaCheck: Validity flag and violations.
    """
    violations = validate_instance(instance, schema)
    return SchemaCheck(valid=not violations, violations=violations)


def validate_or_raise(instance: Any, schema: Dict[str, Any], label: str = "parameters") -> None:
    """Validate a value, raising with every violation listed.

    Args:
        instance: Value to validate.
        schema: JSON Schema.
        label: Name used in the error message.

    Raises:
        InterfaceValidationError: If any constraint is violated.

    Examples:
        >>> schema = {"type": "object", "properties": {"a": {"type": "string"}, "b": {"type": "integer"}}}
        >>> try:
        ...     validate_or_raise({"a": 1, "b": "x"}, schema)
        ... except InterfaceValidationError as e:
        ...     print([v["path"] for v in e.violations])
        ['a', 'b']
    """
    violations = validate_instance(instance, schema)
    if violations:
        summary = "; ".join(f"{v.path or '<root>'}: {v.message}" for v in violations)
        raise InterfaceValidationError(f"Invalid {label}: {summary}", violations=[v.model_dump() for v in violations])


def _properties(schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return the ``properties`` mapping of an object schema.

    Args:
        schema: Schema or None.

    Returns:
        Dict[str, Any]: Property schemas.
    """
    if not schema:
        return {}
    return schema.get("properties") or {}


def _required(schema: Optional[Dict[str, Any]]) -> set:
    """Return the ``required`` names of an object schema.

    Args:
        schema: Schema or None.

    Returns:
        set: Required property names.
    """
    if not schema:
        return set()
    return set(schema.get("required") or [])


def _type_of(prop: Any) -> Optional[Tuple[str, ...]]:
    """Normalize a property ``type`` for comparison.

    Args:
        prop: Property schema.

    Returns:
        Optional[Tuple[str, ...]]: Sorted type names, or None when unspecified.

    Examples:
        >>> _type_of({"type": ["null", "string"]})
        ('null', 'string')
        >>> _type_of({}) is None
        True
    """
    if not isinstance(prop, dict) or "type" not in prop:
        return None
    kind = prop["type"]
    if isinstance(kind, list):
        return tuple(sorted(kind))
    return (kind,)


def diff_parameters(stored: Optional[Dict[str, Any]], live: Optional[Dict[str, Any]], prefix: str = "parameters") -> SchemaDiff:
    """Classify differences between stored and live parameter schemas.

    Args:
        stored: Parameter schema recorded at registration.
        live: Parameter schema reported by the live operation.
        prefix: Label prepended to each change description.

    Returns:
        SchemaDiff: Classified differences.

    Examples:
        >>> stored = {"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]}
        >>> diff_parameters(stored, {"type": "object", "properties": {"query": {"type": "string"}, "limit": {"type": "integer"}}, "required": ["query"]}).breaking
        []
        >>> diff_parameters(stored, {"type": "object", "properties": {"query": {"type": "integer"}}, "required": ["query"]}).breaking
        ["parameters.query: type changed from ['string'] to ['integer']"]
        >>> diff_parameters(stored, {"type": "object", "properties": {}}).breaking
        ['parameters.query: required property removed']
    """
    diff = SchemaDiff()
    stored_props, live_props = _properties(stored), _properties(live)
    stored_req, live_req = _required(stored), _required(live)

    stored_kind = (stored or {}).get("type")
    live_kind = (live or {}).get("type")
    if stored_kind and live_kind and stored_kind != live_kind:
        diff.modified.append(prefix)
        diff.breaking.append(f"{prefix}: type changed from {stored_kind} to {live_kind}")

    for name in sorted(set(stored_props) - set(live_props)):
        diff.removed.append(f"{prefix}.{name}")
        if name in stored_req:
            diff.breaking.append(f"{prefix}.{name}: required property removed")
        else:
            diff.compatible.append(f"{prefix}.{name}: optional property removed")

    for name in sorted(set(live_props) - set(stored_props)):
        diff.added.append(f"{prefix}.{name}")
        if name in live_req:
            diff.breaking.append(f"{prefix}.{name}: new required property")
        else:
            diff.compatible.append(f"{prefix}.{name}: new optional property")

    for name in sorted(set(stored_props) & set(live_props)):
        old_type, new_type = _type_of(stored_props[name]), _type_of(live_props[name])
        if old_type and new_type and old_type != new_type:
            diff.modified.append(f"{prefix}.{name}")
            diff.breaking.append(f"{prefix}.{name}: type changed from {list(old_type)} to {list(new_type)}")
        elif stored_props[name] != live_props[name]:
            diff.modified.append(f"{prefix}.{name}")
            diff.compatible.append(f"{prefix}.{name}: definition changed")

        if name in live_req and name not in stored_req:
            diff.breaking.append(f"{prefix}.{name}: became required")
        elif name in stored_req and name not in live_req:
            diff.compatible.append(f"{prefix}.{name}: no longer required")

    return diff


def diff_response(stored: Optional[Dict[str, Any]], live: Optional[Dict[str, Any]], prefix: str = "response") -> SchemaDiff:
    """Classify differences between stored and live response schemas.

    An empty live response schema means the operation does not describe its
    output; nothing is reported in that case.

    Args:
        stored: Response schema recorded at registration.
        live: Output schema reported by the live operation.
        prefix: Label prepended to each change description.

    Returns:
        SchemaDiff: Classified differences.

    Examples:
        >>> stored = {"type": "object", "properties": {"results": {"type": "array"}}}
        >>> diff_response(stored, {"type": "object", "properties": {}}).breaking
        ['response.results: property removed']
        >>> diff_response(stored, {}).breaking
        []
    """
    diff = SchemaDiff()
    if not live:
        return diff
    stored_props, live_props = _properties(stored), _properties(live)

    for name in sorted(set(stored_props) - set(live_props)):
        diff.removed.append(f"{prefix}.{name}")
        diff.breaking.append(f"{prefix}.{name}: property removed")

    for name in sorted(set(live_props) - set(stored_props)):
        diff.added.append(f"{prefix}.{name}")
        diff.compatible.append(f"{prefix}.{name}: new property")

    for name in sorted(set(stored_props) & set(live_props)):
        old_type, new_type = _type_of(stored_props[name]), _type_of(live_props[name])
        if old_type and new_type and old_type != new_type:
            diff.modified.append(f"{prefix}.{name}")
            diff.breaking.append(f"{prefix}.{name}: type changed from {list(old_type)} to {list(new_type)}")

    return diff


def diff_operation(stored_parameters: Optional[Dict[str, Any]], live_parameters: Optional[Dict[str, Any]], stored_response: Optional[Dict[str, Any]], live_response: Optional[Dict[str, Any]]) -> SchemaDiff:
    """Combine parameter and response drift into one diff.

    Args:
        stored_parameters: Stored parameter schema.
        live_parameters: Live input schema.
        stored_response: Stored response schema.
        live_response: Live output schema.

    Returns:
        SchemaDiff: Merged differences.
    """
    params = diff_parameters(stored_parameters, live_parameters)
    response = diff_response(stored_response, live_response)
    return SchemaDiff(
        added=params.added + response.added,
        removed=params.removed + response.removed,
        modified=params.modified + response.modified,
        breaking=params.breaking + response.breaking,
        compatible=params.compatible + response.compatible,
    )
