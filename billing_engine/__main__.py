"""Command line entry point: ``python -m billing_engine`` or ``billing-engine``."""

import argparse
import os
import sys

import uvicorn

from billing_engine.config import Config, ConfigurationError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Subscription Billing Engine - subscription lifecycle and webhook reconciliation API"
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument(
        "--port", type=int, default=int(os.getenv("PORT", "8080")), help="Port to bind to (default: 8080)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
    )
    parser.add_argument("--log-format", choices=["json", "console"], default=os.getenv("LOG_FORMAT", "json"))
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/billing.yaml"),
        help="Path to billing.yaml (default: config/billing.yaml)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Auto-reload on code changes (development only)",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration and report missing secrets, then exit",
    )
    return parser


def check_config(config_path: str) -> int:
    """Print a configuration summary; return a process exit code."""
    try:
        config = Config(config_path)
    except ConfigurationError as e:
        print(f"Configuration invalid: {e}", file=sys.stderr)
        return 1

    print(f"Config: {config.config_path}")
    print(f"Special offer coupon: {config.special_offer.coupon_id} (enabled={config.special_offer.enabled})")
    print(f"Currency guard: scope={config.currency_guard.scope} (enabled={config.currency_guard.enabled})")
    print(f"Notifications: {config.pubsub_project_id}/{config.pubsub_topic} (enabled={config.notifications.enabled})")
    print(f"Admin API: {'mounted' if config.settings.admin_api_enabled else 'disabled'}")

    missing = [
        env
        for env, value in (
            (config.gateway.api_key_env, config.stripe_secret_key),
            (config.gateway.webhook_secret_env, config.stripe_webhook_secret),
        )
        if not value
    ]
    if missing:
        print(f"Missing secrets: {', '.join(missing)}", file=sys.stderr)
        return 1
    return 0


def main() -> None:
    args = build_parser().parse_args()

    if args.check_config:
        sys.exit(check_config(args.config))

    # Read by billing_engine.main when uvicorn imports it
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config

    if args.log_format == "console":
        print(f"Subscription Billing Engine on {args.host}:{args.port} (config: {args.config})")

    try:
        uvicorn.run(
            "billing_engine.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,
        )
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
