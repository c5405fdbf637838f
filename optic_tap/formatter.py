"""Post-process an Optic-generated OpenAPI document for code generators.

Optic fills ``summary`` where generators expect ``operationId``, and leaves
request and response schemas inline. ``format_spec`` copies the summary into
the operation id and hoists every inline schema into ``components/schemas``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path

log = logging.getLogger("optic-tap")

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")
SCHEMA_REF_PREFIX = "#/components/schemas/"

# (base name, count of schemas already hoisted from this content, number of media types) -> name
SchemaNamer = Callable[[str, int, int], str]


def numbered_schema_name(base: str, index: int, total: int) -> str:
    """``base`` when there is one media type, else ``base2``, ``base3``, ..."""
    if total <= 1:
        return base
    return f"{base}{index + 2}"


def format_spec(path: Path | str, namer: SchemaNamer = numbered_schema_name) -> int:
    """Rewrite the OpenAPI JSON document at ``path`` in place. Returns the number of hoisted schemas."""
    path = Path(path)
    spec = json.loads(path.read_text(encoding="utf-8"))
    hoisted = format_document(spec, namer)
    path.write_text(json.dumps(spec, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return hoisted


def format_document(spec: dict, namer: SchemaNamer = numbered_schema_name) -> int:
    schemas = spec.setdefault("components", {}).setdefault("schemas", {})
    hoisted = 0
    for path_item in spec.get("paths", {}).values():
        for method in HTTP_METHODS:
            operation = path_item.get(method)
            if not isinstance(operation, dict):
                continue
            operation["operationId"] = operation.get("summary", "")
            op_id = operation["operationId"]

            for code, response in operation.get("responses", {}).items():
                if "$ref" in response:
                    continue
                hoisted += _extract_schemas(response.get("content", {}), f"{op_id}_{code}_Response", schemas, namer)

            request_body = operation.get("requestBody")
            if request_body and "$ref" not in request_body:
                hoisted += _extract_schemas(request_body.get("content", {}), f"{op_id}_Request", schemas, namer)
    return hoisted


def _extract_schemas(content: dict, base_name: str, schemas: dict, namer: SchemaNamer) -> int:
    hoisted = 0
    for media in content.values():
        schema = media.get("schema")
        # already extracted
        if not schema or "$ref" in schema:
            continue
        # arrays keep their wrapper; the item schema is what gets named
        if "items" in schema:
            if "$ref" in schema["items"]:
                continue
            holder, key = schema, "items"
        else:
            holder, key = media, "schema"

        name = namer(base_name, hoisted, len(content))
        schemas[name] = holder[key]
        holder[key] = {"$ref": SCHEMA_REF_PREFIX + name}
        log.debug(f"hoisted schema {name}")
        hoisted += 1
    return hoisted


def format_main(argv: list[str] | None = None) -> int:
    """Entry point for the format subcommand."""
    parser = argparse.ArgumentParser(
        prog="optic-tap format",
        description="Set operationId from summary and hoist inline schemas into components.",
    )
    parser.add_argument("spec_file", type=Path, help="Path to the OpenAPI JSON document (rewritten in place)")
    args = parser.parse_args(argv)

    if not args.spec_file.exists():
        print(f"Error: spec file not found: {args.spec_file}", file=sys.stderr)
        return 1
    try:
        hoisted = format_spec(args.spec_file)
    except (json.JSONDecodeError, AttributeError, TypeError) as exc:
        print(f"Error: cannot format {args.spec_file}: {exc}", file=sys.stderr)
        return 1

    print(f"Formatted {args.spec_file} ({hoisted} schemas hoisted)")
    return 0
