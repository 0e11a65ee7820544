#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from dotenv import load_dotenv

from admission.runtime import setup_logger
from admission.safety import CircuitBreakerSettings
from admission.storage import StorageGateway, StorageSettings


def parse_args(defaults: CircuitBreakerSettings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed per-user circuit breaker settings into Redis.",
    )
    parser.add_argument("user_ids", nargs="+", help="User ids whose breaker hash should be seeded.")
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing fields. By default only missing fields are written.",
    )
    parser.add_argument(
        "--print-only",
        action="store_true",
        help="Print resolved keys and payload without writing to Redis.",
    )
    parser.add_argument("--disabled", action="store_true", help="Seed enabled=false.")
    parser.add_argument("--cooldown-minutes", type=int, default=defaults.cooldown_minutes)
    parser.add_argument("--drawdown-threshold", type=float, default=defaults.drawdown_threshold)
    parser.add_argument("--drawdown-window-minutes", type=int, default=defaults.drawdown_window_minutes)
    parser.add_argument("--rug-threshold", type=int, default=defaults.rug_threshold)
    parser.add_argument("--hidden-tax-threshold", type=int, default=defaults.hidden_tax_threshold)
    parser.add_argument("--frozen-token-threshold", type=int, default=defaults.frozen_token_threshold)
    parser.add_argument(
        "--no-admin-override",
        action="store_true",
        help="Let the breaker re-arm by itself after cooldown.",
    )
    return parser.parse_args()


def build_settings(args: argparse.Namespace, defaults: CircuitBreakerSettings) -> CircuitBreakerSettings:
    return CircuitBreakerSettings(
        enabled=defaults.enabled and not args.disabled,
        cooldown_minutes=max(1, int(args.cooldown_minutes)),
        drawdown_threshold=max(0.1, float(args.drawdown_threshold)),
        drawdown_window_minutes=max(1, int(args.drawdown_window_minutes)),
        rug_threshold=max(1, int(args.rug_threshold)),
        hidden_tax_threshold=max(1, int(args.hidden_tax_threshold)),
        frozen_token_threshold=max(1, int(args.frozen_token_threshold)),
        requires_admin_override=defaults.requires_admin_override and not args.no_admin_override,
    )


async def seed(user_ids: list[str], settings: CircuitBreakerSettings, *, overwrite: bool) -> None:
    logger = setup_logger()
    storage = StorageGateway(StorageSettings.from_env(), logger)
    await storage.connect_redis()
    try:
        for user_id in user_ids:
            result = await storage.seed_circuit_breaker_settings(user_id, settings, overwrite=overwrite)
            print(f"Seeded {result['key']}: {', '.join(result['written']) or 'no new fields'}")
    finally:
        await storage.close()


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")

    defaults = CircuitBreakerSettings.from_env()
    args = parse_args(defaults)
    settings = build_settings(args, defaults)

    if args.print_only:
        storage_settings = StorageSettings.from_env()
        for user_id in args.user_ids:
            print(f"Key: {storage_settings.circuit_breaker_key(user_id)}")
        print(json.dumps(settings.to_mapping(), ensure_ascii=False, indent=2))
        return

    asyncio.run(seed(list(args.user_ids), settings, overwrite=args.overwrite))


if __name__ == "__main__":
    main()
