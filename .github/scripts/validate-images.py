#!/usr/bin/env python3
"""Check config/images.yaml: entry schema first, then that every image URL answers."""

from __future__ import annotations

import re
import sys
from pathlib import Path

import requests
import yaml

IMAGES_PATH = Path(__file__).resolve().parents[2] / "config" / "images.yaml"
URL_RE = re.compile(r"^https?://")
SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
REQUIRED_FIELDS = ("name", "url")
REQUEST_TIMEOUT = 30
USER_AGENT = "consoleboot/image-validator (GitHub Actions)"


def load_images(path: Path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f)


def _entry_errors(key: str, entry) -> list[str]:
    if not isinstance(entry, dict):
        return [f"[{key}] entry is not a mapping"]
    errors = []
    for field in REQUIRED_FIELDS:
        if field not in entry:
            errors.append(f"[{key}] missing required field '{field}'")
        elif not isinstance(entry[field], str):
            errors.append(f"[{key}] '{field}' must be a string")
    url = entry.get("url")
    if isinstance(url, str) and not URL_RE.match(url):
        errors.append(f"[{key}] 'url' must start with http:// or https://")
    if "sha256" in entry and not SHA256_RE.match(str(entry["sha256"])):
        errors.append(f"[{key}] 'sha256' must be 64 hex characters")
    return errors


def validate_schema(data) -> list[str]:
    if not isinstance(data, dict) or "images" not in data:
        return ["Top-level 'images' key is missing"]
    images = data["images"]
    if not isinstance(images, dict):
        return ["'images' must be a mapping"]
    errors: list[str] = []
    for key, entry in images.items():
        errors.extend(_entry_errors(key, entry))
    return errors


def check_url(key: str, url: str) -> str | None:
    """Return an error string if the URL is unreachable, else None."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT
    try:
        status = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True).status_code
        if status in (403, 405):
            # Some mirrors refuse HEAD; a streamed GET does not fetch the body.
            resp = session.get(url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True)
            resp.close()
            status = resp.status_code
    except requests.RequestException as exc:
        return f"[{key}] {exc.__class__.__name__}: {exc} for {url}"
    if status < 400:
        return None
    return f"[{key}] HTTP {status} for {url}"


def validate_urls(data: dict) -> list[str]:
    results = (check_url(key, entry["url"]) for key, entry in data["images"].items() if entry.get("url"))
    return [err for err in results if err]


def _report(title: str, errors: list[str]) -> None:
    for err in errors:
        print(f"  ERROR: {err}")
    print(f"\n{title}")


def main(path: Path = IMAGES_PATH) -> int:
    print(f"Loading {path}")
    data = load_images(path)

    print("\n== Schema ==")
    schema_errors = validate_schema(data)
    if schema_errors:
        _report(f"Schema validation failed with {len(schema_errors)} error(s)", schema_errors)
        return 1
    count = len(data["images"])
    print(f"  OK: {count} image(s)")

    print("\n== Reachability ==")
    url_errors = validate_urls(data)
    if url_errors:
        _report(f"{len(url_errors)}/{count} image URL(s) unreachable", url_errors)
        return 1
    print(f"  OK: all {count} URL(s) reachable")
    return 0


if __name__ == "__main__":
    sys.exit(main())
