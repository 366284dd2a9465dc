#!/usr/bin/env python3
"""Export OpenAPI schema to JSON and YAML files.

Usage:
    python scripts/export_openapi.py [output-dir]

Output:
    docs/api/openapi.json
    docs/api/openapi.yaml
"""

import json
import sys
from pathlib import Path

import yaml


def export_openapi(docs_dir: Path | None = None) -> dict:
    """Export OpenAPI schema to JSON and YAML files.

    Returns:
        The exported schema
    """
    from taleforge.api.main import create_app

    schema = create_app().openapi()

    docs_dir = docs_dir or Path(__file__).parent.parent / "docs" / "api"
    docs_dir.mkdir(parents=True, exist_ok=True)

    json_path = docs_dir / "openapi.json"
    with open(json_path, "w") as f:
        json.dump(schema, f, indent=2, ensure_ascii=False)
    print(f"Exported: {json_path}")

    yaml_path = docs_dir / "openapi.yaml"
    with open(yaml_path, "w") as f:
        yaml.dump(schema, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    print(f"Exported: {yaml_path}")

    paths_count = len(schema.get("paths", {}))
    schemas_count = len(schema.get("components", {}).get("schemas", {}))
    print("\nOpenAPI Schema Summary:")
    print(f"  Version: {schema.get('openapi', 'unknown')}")
    print(f"  Title: {schema.get('info', {}).get('title', 'unknown')}")
    print(f"  API Version: {schema.get('info', {}).get('version', 'unknown')}")
    print(f"  Endpoints: {paths_count}")
    print(f"  Schemas: {schemas_count}")
    return schema


if __name__ == "__main__":
    export_openapi(Path(sys.argv[1]) if len(sys.argv) > 1 else None)
