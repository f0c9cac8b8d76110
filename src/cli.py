#!/usr/bin/env python3
"""
x402 Distributor Command Line Interface.

Provides commands for running and operating the distributor:
    - serve: Start the API server
    - check: Verify installation and configuration
    - info: Display configuration and storage information
    - register: Register a revenue stream
    - distribute: Distribute a payment by hand
    - history: Show a stream's recent ledger records
    - stats: Show a stream's aggregate statistics

Usage:
    x402-distributor serve [--host HOST] [--port PORT] [--debug] [--production]
    x402-distributor check
    x402-distributor register STREAM_ID TREASURY [--model equal] [--percentage 100]
    x402-distributor distribute STREAM_ID AMOUNT [--currency SOL] [--reference SIG]
    x402-distributor history STREAM_ID [--limit 10] [--offset 0]
    x402-distributor stats STREAM_ID
    x402-distributor --version
"""

import argparse
import json
import os
import sys

# Ensure src is in path when running from source
if os.path.exists(os.path.join(os.path.dirname(__file__), "distribution_service.py")):
    sys.path.insert(0, os.path.dirname(__file__))

from config import DistributorSettings, __version__  # noqa: E402
from distribution_errors import DistributionError  # noqa: E402
from monitoring import configure_logging  # noqa: E402


def _load_settings() -> DistributorSettings:
    settings = DistributorSettings.from_env()
    configure_logging(settings.log_level, json_output=settings.log_format == "json")
    return settings


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_serve(args):
    """Start the x402 distributor API server."""
    settings = _load_settings()
    host = args.host or settings.host
    port = args.port or settings.port

    print(f"Starting x402 distributor on {host}:{port}")

    if args.production:
        try:
            import gunicorn.app.base
        except ImportError:
            print(
                "Error: gunicorn not installed. "
                "Install with: pip install x402-distributor[production]"
            )
            sys.exit(1)

        class StandaloneApplication(gunicorn.app.base.BaseApplication):
            """Gunicorn WSGI application wrapper for production deployment.

            Wraps a Flask application for use with Gunicorn's WSGI server,
            allowing configuration through a dictionary of options.
            """

            def __init__(self, app, options=None):
                self.options = options or {}
                self.application = app
                super().__init__()

            def load_config(self):
                """Load configuration from the options dictionary into Gunicorn settings."""
                for key, value in self.options.items():
                    if key in self.cfg.settings and value is not None:
                        self.cfg.set(key.lower(), value)

            def load(self):
                """Return the Flask application instance for Gunicorn to serve."""
                return self.application

        from api import create_app

        options = {
            "bind": f"{host}:{port}",
            "workers": args.workers or int(os.getenv("WORKERS", 4)),
            # Distributions block on confirmation; threads keep workers responsive
            "worker_class": "gthread",
            "threads": 4,
            "timeout": int(settings.confirmation_timeout + settings.lock_timeout + 30),
            "accesslog": "-",
            "errorlog": "-",
        }
        StandaloneApplication(create_app(settings=settings), options).run()
    else:
        from api import create_app

        create_app(settings=settings).run(host=host, port=port, debug=args.debug)


def cmd_check(args):
    """Check installation and configuration."""
    print("x402 Distributor Installation Check")
    print("=" * 40)

    checks = []

    try:
        settings = DistributorSettings.from_env()
        settings.validate()
        checks.append(("Configuration", "OK"))
    except DistributionError as e:
        checks.append(("Configuration", f"FAIL: {e.message}"))
        settings = None

    try:
        from storage import get_storage_backend

        storage = get_storage_backend(
            settings.storage_backend if settings else None,
            data_dir=settings.data_dir if settings else None,
            database_url=settings.database_url if settings else None,
        )
        status = "OK" if storage.is_available() else "WARN (not available)"
        checks.append((f"Storage ({storage.__class__.__name__})", status))
    except Exception as e:
        checks.append(("Storage", f"FAIL: {e}"))

    if settings is not None:
        try:
            from funds_distributor import load_signer

            signer = load_signer(settings.signer_secret, settings.signer_keypair_path)
            checks.append(
                ("Signer", f"OK ({signer.pubkey()})" if signer else "SKIP (mock distributions)")
            )
        except DistributionError as e:
            checks.append(("Signer", f"FAIL: {e.message}"))

        checks.append(
            ("Holder source", "SKIP (mock data)" if settings.use_mock_data else "OK (on-chain)")
        )
        checks.append(
            (
                "Webhook signatures",
                "OK" if settings.webhook_secret else "SKIP (X402_WEBHOOK_SECRET not set)",
            )
        )

        if settings.redis_url:
            try:
                from scaling import RedisLockManager

                RedisLockManager(settings.redis_url).close()
                checks.append(("Redis locks", "OK"))
            except Exception as e:
                checks.append(("Redis locks", f"FAIL: {e}"))
        else:
            checks.append(("Redis locks", "SKIP (process-local locks)"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status.startswith("OK") else ("○" if "SKIP" in status or "WARN" in status else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def cmd_info(args):
    """Display configuration and storage information."""
    import platform

    print("x402 Distributor Information")
    print("=" * 40)
    print(f"Version: {__version__}")
    print(f"Python: {platform.python_version()}")
    print(f"Platform: {platform.platform()}")

    settings = DistributorSettings.from_env()
    print()
    print("Configuration:")
    for key, value in settings.describe().items():
        print(f"  {key}: {value}")

    print()
    print("Storage:")
    try:
        from storage import get_storage_backend

        storage = get_storage_backend(
            settings.storage_backend,
            data_dir=settings.data_dir,
            database_url=settings.database_url,
        )
        for key, value in storage.get_info().items():
            print(f"  {key}: {value}")
    except Exception as e:
        print(f"  Error: {e}")

    return 0


def _service():
    from distribution_service import create_distribution_service

    return create_distribution_service(_load_settings())


def cmd_register(args):
    """Register a revenue stream."""
    config = _service().register_stream(
        args.stream_id,
        args.treasury,
        distribution_model=args.model,
        distribution_percentage=args.percentage,
        creator_split_percentage=args.creator_percentage,
        payment_endpoint=args.payment_endpoint,
    )
    _print_json(config.to_dict())
    return 0


def cmd_distribute(args):
    """Distribute a payment by hand."""
    from distribution_types import PaymentEvent

    settings = _load_settings()
    if settings.is_production and not args.force:
        print("Refusing manual distribution in production without --force")
        return 1

    from distribution_service import create_distribution_service

    payload = {"streamId": args.stream_id, "amount": args.amount, "currency": args.currency}
    if args.reference:
        payload["fundingReference"] = args.reference
    event = PaymentEvent.from_payload(payload)
    result = create_distribution_service(settings).distribute(event)
    _print_json(result.to_dict())
    return 0


def cmd_history(args):
    _print_json(_service().get_history(args.stream_id, limit=args.limit, offset=args.offset))
    return 0


def cmd_stats(args):
    _print_json(_service().get_stats(args.stream_id))
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="x402-distributor",
        description="x402 payment-split distribution service",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: X402_HOST)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: X402_PORT)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument(
        "--production", action="store_true", help="Use gunicorn for production"
    )
    serve_parser.add_argument("--workers", type=int, help="Number of workers (production mode)")

    subparsers.add_parser("check", help="Check installation and configuration")
    subparsers.add_parser("info", help="Display configuration information")

    register_parser = subparsers.add_parser("register", help="Register a revenue stream")
    register_parser.add_argument("stream_id", help="Stream id (NFT mint address)")
    register_parser.add_argument("treasury", help="Treasury wallet address")
    register_parser.add_argument(
        "--model", default="equal", help="equal, weighted or creator-split"
    )
    register_parser.add_argument("--percentage", type=int, default=100, help="Holder share (0-100)")
    register_parser.add_argument("--creator-percentage", help="Creator share (creator-split)")
    register_parser.add_argument("--payment-endpoint", help="x402 payment endpoint")

    distribute_parser = subparsers.add_parser("distribute", help="Distribute a payment")
    distribute_parser.add_argument("stream_id", help="Stream id")
    distribute_parser.add_argument("amount", help="Amount (decimal string)")
    distribute_parser.add_argument("--currency", default="SOL", help="SOL or LAMPORTS")
    distribute_parser.add_argument("--reference", help="Funding reference for deduplication")
    distribute_parser.add_argument(
        "--force", action="store_true", help="Allow in production"
    )

    history_parser = subparsers.add_parser("history", help="Show ledger records")
    history_parser.add_argument("stream_id", help="Stream id")
    history_parser.add_argument("--limit", type=int, default=10)
    history_parser.add_argument("--offset", type=int, default=0)

    stats_parser = subparsers.add_parser("stats", help="Show stream statistics")
    stats_parser.add_argument("stream_id", help="Stream id")

    args = parser.parse_args()

    commands = {
        "check": cmd_check,
        "info": cmd_info,
        "register": cmd_register,
        "distribute": cmd_distribute,
        "history": cmd_history,
        "stats": cmd_stats,
    }

    if args.command == "serve":
        cmd_serve(args)
    elif args.command in commands:
        try:
            sys.exit(commands[args.command](args))
        except DistributionError as e:
            _print_json({"success": False, "error": e.to_dict()})
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
