#!/usr/bin/env python3
"""
Agent Manager CLI - terminal sessions and task state for Claude Code sub agents.

Usage:
    agent-manager                   # Serve on 127.0.0.1:3001 (same as `serve`)
    agent-manager serve --port 4000 # Serve on another port
    agent-manager init              # Write a default .claude-agents.json
"""

import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

import uvicorn

from agent_manager import __version__
from agent_manager.workspace import (
    AGENTS_DIR_ENV_VAR,
    CONFIG_ENV_VAR,
    DEFAULT_AGENTS_DIR,
    ROOT_ENV_VAR,
    find_config_file,
    load_config,
    write_default_config,
)

logger = logging.getLogger(__name__)

DEFAULT_HOST = '127.0.0.1'
DEFAULT_PORT = 3001
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
APP_FACTORY = 'agent_manager.dashboard.main:create_app'


def resolve_config(config_path: Optional[str], start_dir: str) -> Tuple[str, Dict[str, Any]]:
    """
    Locate and load the project config.

    An explicit path wins; otherwise walk up from start_dir. When nothing is
    found a default .claude-agents.json is created in start_dir.
    """
    if config_path:
        config_path = os.path.abspath(config_path)
    else:
        config_path = find_config_file(start_dir)
        if not config_path:
            logger.info(f"No config file found, creating a default one in {start_dir}")
            config_path = write_default_config(start_dir)

    return config_path, load_config(config_path)


def apply_config(config_path: str, config: Dict[str, Any], root: Optional[str]) -> str:
    """Export the resolved settings so the app factory (possibly in a reloader process) sees them."""
    project_root = os.path.abspath(root) if root else os.path.dirname(config_path)

    agents_dir = config.get('agentsDirectory') or DEFAULT_AGENTS_DIR
    if not os.path.isabs(agents_dir):
        agents_dir = os.path.join(project_root, agents_dir)

    os.environ[ROOT_ENV_VAR] = project_root
    os.environ[CONFIG_ENV_VAR] = config_path
    os.environ[AGENTS_DIR_ENV_VAR] = agents_dir
    return project_root


def cmd_serve(args) -> int:
    try:
        config_path, config = resolve_config(args.config, os.getcwd())
    except (OSError, ValueError) as e:
        logger.error(f"Could not load config: {e}")
        return 1

    project_root = apply_config(config_path, config, args.root)
    logger.info(f"Using config from: {config_path}")
    logger.info(f"Project root: {project_root}")
    logger.info(f"Agent Manager running at http://{args.host}:{args.port}")

    uvicorn.run(
        APP_FACTORY,
        factory=True,
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )
    return 0


def cmd_init(args) -> int:
    """Initialize a config file in the current directory."""
    target = os.path.abspath(args.path or '.')
    try:
        config_path = write_default_config(target)
    except FileExistsError as e:
        print(f"Config file already exists: {e}")
        return 1

    print(f"Created {config_path}")
    print('You can now run "agent-manager" to start the agent manager.')
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='agent-manager',
        description='Agent Manager - terminal sessions and task state for Claude Code sub agents',
    )
    parser.add_argument('--version', action='version', version=f'agent-manager {__version__}')

    subparsers = parser.add_subparsers(dest='command')

    # serve
    serve_p = subparsers.add_parser('serve', help='Run the API server (default)')
    _add_serve_arguments(serve_p)

    # init
    init_p = subparsers.add_parser('init', help='Create a default .claude-agents.json')
    init_p.add_argument('path', nargs='?', help='Directory to initialize (default: current dir)')

    # serve flags are also accepted without the subcommand
    _add_serve_arguments(parser)
    return parser


def _add_serve_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--config', '-c', help='Path to config file')
    parser.add_argument('--root', help='Project root (default: directory of the config file)')
    parser.add_argument('--host', default=DEFAULT_HOST)
    parser.add_argument('--port', '-p', type=int, default=DEFAULT_PORT, help='Port to run the server on')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    if args.command == 'init':
        return cmd_init(args)
    return cmd_serve(args)


if __name__ == '__main__':
    sys.exit(main())
