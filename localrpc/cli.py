#!/usr/bin/env python3
"""
localrpc - serve registered tools over HTTP.

Usage:
    localrpc --config tools.yaml --port 3000
    localrpc --list
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional
import argparse
import asyncio
import logging
import secrets
import sys

from pydantic import BaseModel, Field
from rich.console import Console
from rich.table import Table

from .core.pipeline import ToolPipeline
from .infra.config import ConfigManager, ServerConfig, create_pipeline_from_config, pipeline_config_from
from .infra.logging import configure_logging
from .integrations.service_bus import create_app, run_server
from .security.access_control import UserRole
from .security.auth import AuthService
from .tools.registry import Tool

console = Console()


class EchoInput(BaseModel):
    message: str


class CurrentTimeInput(BaseModel):
    timezone: Optional[str] = Field(None, description="IANA zone name, e.g. Europe/Paris")


def echo(args: EchoInput) -> dict:
    return {"message": args.message}


def get_current_time(args: CurrentTimeInput) -> dict:
    if args.timezone:
        from zoneinfo import ZoneInfo
        now = datetime.now(ZoneInfo(args.timezone))
    else:
        now = datetime.now(timezone.utc).astimezone()
    return {"time": now.strftime("%H:%M:%S"), "date": now.strftime("%Y-%m-%d")}


def default_tools() -> List[Tool]:
    """Tools registered when the config provides none."""
    return [
        Tool(name="echo", description="Echo back the input", schema=EchoInput, handler=echo),
        Tool(
            name="get_current_time",
            description="Get the current time",
            schema=CurrentTimeInput,
            handler=get_current_time,
            config={"enable_cache": False},
        ),
    ]


def build_pipeline(manager: ConfigManager, default_timeout_seconds: Optional[float] = None) -> ToolPipeline:
    """Pipeline from config. An explicit timeout beats both the file and LOCALRPC_* variables."""
    pipeline_config = pipeline_config_from(manager)
    if default_timeout_seconds is not None:
        pipeline_config = replace(pipeline_config, default_timeout_seconds=default_timeout_seconds)

    pipeline = create_pipeline_from_config(manager, pipeline_config=pipeline_config)
    if not pipeline.get_all_tools():
        console.print("[dim]No tools loaded from config, registering default tools[/dim]")
        for tool in default_tools():
            pipeline.register(tool)
    return pipeline


def print_tools(pipeline: ToolPipeline) -> None:
    table = Table(title="Registered tools")
    table.add_column("Name", style="bold cyan")
    table.add_column("Category")
    table.add_column("Description")
    table.add_column("Timeout")

    for tool in pipeline.get_all_tools():
        timeout = tool.config.timeout_seconds or pipeline.config.default_timeout_seconds
        table.add_row(tool.name, tool.category, tool.description, f"{timeout}s" if timeout else "-")

    console.print(table)


def build_auth(manager: ConfigManager) -> AuthService:
    """Auth service with a bootstrap admin whose API key is printed once."""
    auth = AuthService(enabled=True, secret_key=manager.get("auth.secret_key"))
    admin = auth.create_user("admin", manager.get("auth.admin_password") or secrets.token_urlsafe(16), UserRole.ADMIN)
    console.print(f"[yellow]Admin API key:[/yellow] {admin.api_key}")
    return auth


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="localrpc - local tool invocation server"
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to YAML configuration file"
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind (default from config, else 127.0.0.1)"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Port to listen on (default from config, else 3000)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Default tool timeout in seconds"
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="Print the registered tools and exit"
    )

    args = parser.parse_args(argv)

    configure_logging(getattr(logging, args.log_level))
    logger = logging.getLogger("localrpc.cli")

    try:
        manager = ConfigManager(args.config)

        server_config = ServerConfig.from_manager(manager)
        host = args.host or server_config.host
        port = args.port or server_config.port

        with build_pipeline(manager, args.timeout) as pipeline:
            if args.list:
                print_tools(pipeline)
                return 0

            auth = build_auth(manager) if server_config.auth_enabled else None
            app = create_app(pipeline, auth)

            names = ", ".join(tool.name for tool in pipeline.get_all_tools())
            console.print(f"[green]localrpc listening on http://{host}:{port}[/green]")
            console.print(f"[dim]Registered tools: {names}[/dim]")

            asyncio.run(run_server(app, host=host, port=port))
        return 0

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except Exception as e:
        logger.exception("Fatal error")
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
