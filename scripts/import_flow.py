#!/usr/bin/env python3
"""
Flow Import — Load flow definition documents exported by the visual builder.

Each file holds one FlowDefinition as JSON (builder shape with
``data: {label, config}`` nodes, or the flat shape). The graph is validated
before anything is written; invalid documents are reported and skipped.

Usage:
    python scripts/import_flow.py flows/vendas.json
    python scripts/import_flow.py flows/*.json --activate --department vendas
    python scripts/import_flow.py flows/vendas.json --dry-run
"""
import asyncio
import json
import os
import sys
import argparse
from dataclasses import replace

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def import_flows(paths: list[str], activate: bool = False, department: str = "",
                       dry_run: bool = False, backend: str = None) -> int:
    from pydantic import ValidationError

    from config.settings import load_settings
    from core.errors import FlowValidationError
    from database.session import close_db, init_db
    from database.store_factory import create_store
    from models.schemas import FlowDefinition

    settings = load_settings()
    store_backend = backend or settings.database.store_backend
    store = None
    if not dry_run:
        if store_backend == "sql":
            await init_db()
        store = create_store(replace(settings.database, store_backend=store_backend))

    failures = 0
    for path in paths:
        try:
            with open(path, encoding="utf-8") as f:
                document = json.load(f)
            flow = FlowDefinition.model_validate(document)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            print(f"✗ {path}: {e}")
            failures += 1
            continue

        if department:
            flow.department_code = department
        if activate:
            flow.is_active = True

        errors = flow.validate_graph()
        if errors:
            print(f"✗ {path}:")
            for err in errors:
                print(f"    - {err}")
            failures += 1
            continue

        if dry_run:
            print(f"✓ {path}: {flow.name or flow.id} ({len(flow.nodes)} nodes, {len(flow.edges)} edges) valid")
            continue

        try:
            saved = await store.save_flow(flow)
        except FlowValidationError as e:
            print(f"✗ {path}: {e}")
            failures += 1
            continue
        state = "active" if saved.is_active else "inactive"
        print(f"✓ {path}: imported {saved.id} for department '{saved.department_code}' ({state})")

    if store_backend == "sql" and not dry_run:
        await close_db()
    return failures


def main():
    parser = argparse.ArgumentParser(description="Import flow definitions")
    parser.add_argument("paths", nargs="+", help="Flow definition JSON files")
    parser.add_argument("--activate", action="store_true", help="Mark imported flows active")
    parser.add_argument("--department", default="", help="Override the department code")
    parser.add_argument("--dry-run", action="store_true", help="Validate only, write nothing")
    parser.add_argument("--backend", choices=["sql", "file", "memory"], default=None,
                        help="Store backend (default: settings.yaml)")
    args = parser.parse_args()

    failures = asyncio.run(import_flows(
        args.paths, activate=args.activate, department=args.department,
        dry_run=args.dry_run, backend=args.backend,
    ))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
