"""CLI entrypoint for the pay-per-call gateway."""
from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List

from pydantic import ValidationError

from .api import create_app, run_api
from .config import BootstrapRegistration, settings
from .errors import GatewayError
from .ledger import Ledger
from .registry import Registry
from .usage import UsageRecorder


def _normalize_bootstrap_payload(payload: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(payload, list):
        for item in payload:
            if isinstance(item, dict):
                yield dict(item)
    elif isinstance(payload, dict):
        if "slug" in payload and "upstream_base_url" in payload:
            yield dict(payload)
        else:
            for slug, value in payload.items():
                if isinstance(value, dict):
                    candidate = dict(value)
                    candidate.setdefault("slug", slug)
                    yield candidate


def _load_bootstrap_registrations(logger: logging.Logger) -> List[BootstrapRegistration]:
    entries: List[BootstrapRegistration] = []
    sources: list[tuple[str, Any]] = []

    inline = settings.bootstrap_apis_inline
    if inline:
        try:
            sources.append(("env:GATEWAY_BOOTSTRAP_APIS_INLINE", json.loads(inline)))
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse GATEWAY_BOOTSTRAP_APIS_INLINE JSON: %s", exc)

    path = settings.bootstrap_apis_path
    if path:
        resolved = Path(path).expanduser()
        if resolved.exists():
            try:
                with resolved.open("r", encoding="utf-8") as handle:
                    sources.append((f"file:{resolved}", json.load(handle)))
            except json.JSONDecodeError as exc:
                logger.error("Failed to parse API bootstrap file %s: %s", resolved, exc)
            except OSError as exc:
                logger.error("Unable to read API bootstrap file %s: %s", resolved, exc)

    seen_slugs: set[str] = set()
    for source, payload in sources:
        for candidate in _normalize_bootstrap_payload(payload):
            try:
                entry = BootstrapRegistration.model_validate(candidate)
            except ValidationError as exc:
                logger.error("Invalid API entry from %s: %s", source, exc)
                continue

            if entry.slug in seen_slugs:
                logger.debug("Skipping duplicate API bootstrap entry %s (%s)", entry.slug, source)
                continue
            seen_slugs.add(entry.slug)
            entries.append(entry)

    return entries


def _register_bootstrap_apis(
    logger: logging.Logger,
    registry: Registry,
    entries: List[BootstrapRegistration],
) -> None:
    for entry in entries:
        try:
            gateway_url = registry.register(
                entry.slug,
                entry.upstream_base_url,
                entry.price_per_call,
                entry.owner_wallet,
                entry.listing_id,
            )
        except GatewayError as exc:
            logger.error("Failed to bootstrap API %s (%s): %s", entry.slug, entry.upstream_base_url, exc.message)
            continue
        logger.info("Bootstrapped API %s at %s", entry.slug, gateway_url)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def main() -> None:
    configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting pay-per-call gateway")

    ledger = Ledger(settings.ledger.balances, journal_path=settings.ledger.journal)
    registry = Registry(
        settings.registry_paths.registry,
        public_base_url=settings.public_base_url,
        conflict_policy=settings.slug_conflict_policy,
        audit_log_path=settings.audit_log_path,
    )
    recorder = UsageRecorder(settings.usage_paths.events)

    _register_bootstrap_apis(logger, registry, _load_bootstrap_registrations(logger))

    logger.info(
        "Gateway ready with %s registered APIs; public base %s",
        registry.count(),
        settings.public_base_url,
    )
    app = create_app(registry, ledger, recorder, settings)
    run_api(app, settings)


if __name__ == "__main__":
    main()
