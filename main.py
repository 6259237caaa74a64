"""
CLI entry point for the Security Manager console API.

Usage:
    python main.py serve [--host 0.0.0.0] [--port 8000] [--reload]
    python main.py install-command --token sm_... [--os linux] [--host-id web-01 --org-id <uuid>]
"""

import argparse
import logging
import sys
import uuid

from security_manager.config import get_settings


def cmd_serve(args):
    """Start the FastAPI app under uvicorn."""
    import uvicorn

    settings = get_settings()
    host = args.host or settings.api_host
    port = args.port or settings.api_port
    print(f"Starting Security Manager API on {host}:{port} (debug={settings.debug})")
    uvicorn.run(
        "security_manager.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="debug" if settings.debug else "info",
    )


def cmd_install_command(args):
    """Render an install command offline for an existing key."""
    from security_manager.db.models import Agent, ApiKey
    from security_manager.services.credentials import CredentialIssuer

    if bool(args.host_id) != bool(args.org_id):
        print("Error: --host-id and --org-id must be given together.")
        sys.exit(1)

    issuer = CredentialIssuer(get_settings().installer_config())
    api_key = ApiKey(key=args.token, name="cli")
    agent = None
    if args.host_id:
        agent = Agent(host_id=args.host_id, organization_id=uuid.UUID(args.org_id))
    print(issuer.render_install_command(
        api_key,
        agent=agent,
        os_type=args.os,
        ingest_address=args.ingest,
    ))


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    parser = argparse.ArgumentParser(
        description="Security Manager - organization, credential and agent console API"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve
    p_serve = subparsers.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    # install-command
    p_cmd = subparsers.add_parser("install-command", help="Render an install command")
    p_cmd.add_argument("--token", required=True, help="Organization API key (sm_...)")
    p_cmd.add_argument("--os", default="linux", help="Target OS family")
    p_cmd.add_argument("--host-id", default=None, help="Pre-assigned host id (targeted install)")
    p_cmd.add_argument("--org-id", default=None, help="Organization id (targeted install)")
    p_cmd.add_argument("--ingest", default=None, help="Override the ingest address")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "serve": cmd_serve,
        "install-command": cmd_install_command,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
