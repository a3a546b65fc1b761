import argparse
import asyncio
from pathlib import Path

from core.config import AppSettings, Config
from core.errors import ChannelUnavailable, ConfigError, EnvError
from core.logging import logger
from services.host import BridgeRuntime, build_transport


def _build_config(args: argparse.Namespace) -> Config:
    overrides = {
        "BRIDGE_SIDE": args.side,
        "BRIDGE_TRANSPORT": args.transport,
        "BRIDGE_WS_URL": args.ws_url,
        "BRIDGE_NATIVE_COMMAND": args.command,
    }
    app = AppSettings(**{key: value for key, value in overrides.items() if value is not None})
    return Config(app=app, config_dir=Path(args.config_dir) if args.config_dir else None)


async def main(argv=None) -> int:
    """CLI entry point: serve the bridge until the channel closes."""
    parser = argparse.ArgumentParser(description="codebridge host")
    parser.add_argument("--side", choices=["local", "remote"], help="Which side of the bridge this process is.")
    parser.add_argument("--transport", choices=["stdio", "native", "websocket"], help="Channel used to reach the peer.")
    parser.add_argument("--ws-url", help="WebSocket URL for --transport websocket.")
    parser.add_argument("--command", help="Peer command line for --transport native.")
    parser.add_argument("--config-dir", help="Directory holding bridge.yml, routing.yml and providers.yml.")
    parser.add_argument("--session", default="default", help="Shared session id.")
    args = parser.parse_args(argv)

    try:
        config = _build_config(args)
        runtime = BridgeRuntime(config, build_transport(config), session_id=args.session)
        await runtime.run_until_closed()
    except (ConfigError, EnvError) as e:
        logger.error(f"Configuration Error: {e}")
        return 2
    except ChannelUnavailable as e:
        logger.error(f"Could not open bridge channel: {e}")
        return 1
    return 0


def cli() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    # To run: python bridge_host.py --transport websocket --ws-url ws://localhost:8765
    cli()
