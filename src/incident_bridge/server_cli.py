"""CLI entry point for the incident-bridge server."""

import argparse
import asyncio
import json
import os
import sys


def _validate_config(config_dir: str) -> int:
    from incident_bridge.errors.exceptions import ConfigurationError
    from incident_bridge.sync.config import load_bridge_config

    try:
        config = load_bridge_config(config_dir)
    except ConfigurationError as exc:
        print(f"Configuration invalid: {exc.message}", file=sys.stderr)
        for detail in exc.details or []:
            print(f"  - {detail}", file=sys.stderr)
        return 1
    print(json.dumps(config.summary(), indent=2))
    return 0


async def _health_check() -> int:
    from incident_bridge.main import create_app

    app = create_app()
    try:
        result = await app.state.forward_engine.health_check()
    finally:
        await app.state.servicenow.aclose()
        await app.state.incident_io.aclose()
    print(json.dumps(result, indent=2))
    return 0 if result["status"] == "healthy" else 1


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="incident-bridge",
        description="incident.io <-> ServiceNow sync bridge",
    )
    parser.add_argument("--host", default=None, help="Bind host (default: BRIDGE_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: BRIDGE_PORT or 5002)")
    parser.add_argument("--config-dir", default=None, help="Directory holding config.yaml and field-mappings.yaml")
    parser.add_argument(
        "--validate-config",
        action="store_true",
        help="Load and validate the configuration, print a summary, then exit",
    )
    parser.add_argument(
        "--health-check",
        action="store_true",
        help="Check both platform connections and the mappings, then exit",
    )
    args = parser.parse_args(argv)

    if args.config_dir:
        os.environ["BRIDGE_CONFIG_DIR"] = args.config_dir

    from incident_bridge.config import Settings

    settings = Settings()

    if args.validate_config:
        sys.exit(_validate_config(settings.config_dir))
    if args.health_check:
        sys.exit(asyncio.run(_health_check()))

    import uvicorn

    uvicorn.run(
        "incident_bridge.main:create_app",
        factory=True,
        host=args.host or settings.host,
        port=args.port or settings.port,
    )


if __name__ == "__main__":
    main()
