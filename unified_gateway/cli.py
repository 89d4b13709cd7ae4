from __future__ import annotations

import argparse
import asyncio
from typing import Any, Callable

from unified_gateway.catalog import ModelCatalogCache
from unified_gateway.config import EndpointUpsert
from unified_gateway.errors import GatewayError
from unified_gateway.gateway.tokens import TokenResolver
from unified_gateway.gateway.upstream import build_upstream_client
from unified_gateway.registry import EndpointRegistry
from unified_gateway.settings import Settings, get_settings
from unified_gateway.utils.cli_output import print_error, print_yaml
from unified_gateway.utils.persistence import FileStore

ENDPOINT_OPTION_FIELDS = {
    "id": "id",
    "name": "name",
    "base_url": "baseUrl",
    "auth_type": "authType",
    "api_key": "apiKey",
    "token_url": "tokenUrl",
    "client_id": "clientId",
    "client_secret": "clientSecret",
    "scope": "scope",
}


def _settings_for(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    overrides: dict[str, Any] = {}
    if getattr(args, "config", None):
        overrides["config_path"] = args.config
    if getattr(args, "models_cache", None):
        overrides["models_cache_path"] = args.models_cache
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def _registry_for(settings: Settings) -> EndpointRegistry:
    return EndpointRegistry(FileStore(settings.config_path))


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "unified_gateway.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=False,
    )
    return 0


def cmd_endpoints_list(args: argparse.Namespace) -> int:
    registry = _registry_for(_settings_for(args))
    print_yaml(asyncio.run(registry.list_endpoints()))
    return 0


def cmd_endpoints_add(args: argparse.Namespace) -> int:
    payload = {
        alias: getattr(args, field)
        for field, alias in ENDPOINT_OPTION_FIELDS.items()
        if getattr(args, field) is not None
    }
    registry = _registry_for(_settings_for(args))
    endpoint = asyncio.run(registry.upsert(EndpointUpsert.model_validate(payload)))
    print_yaml(endpoint.masked())
    return 0


def cmd_endpoints_remove(args: argparse.Namespace) -> int:
    registry = _registry_for(_settings_for(args))
    asyncio.run(registry.delete(args.id))
    return 0


def cmd_endpoints_select(args: argparse.Namespace) -> int:
    registry = _registry_for(_settings_for(args))
    asyncio.run(registry.select_current(args.id))
    return 0


def cmd_models_refresh(args: argparse.Namespace) -> int:
    settings = _settings_for(args)

    async def _refresh() -> dict[str, str]:
        async with build_upstream_client(settings) as client:
            token_resolver = TokenResolver(
                client_getter=lambda: client,
                refresh_skew_seconds=settings.oauth_refresh_skew_seconds,
                default_expires_in_seconds=settings.oauth_default_expires_in_seconds,
            )
            catalog = ModelCatalogCache(
                FileStore(settings.models_cache_path),
                registry=_registry_for(settings),
                token_resolver=token_resolver,
                client_getter=lambda: client,
            )
            return await catalog.refresh_all()

    results = asyncio.run(_refresh())
    print_yaml({"results": results})
    return 0 if all(outcome == "Success" for outcome in results.values()) else 1


def cmd_key_show(args: argparse.Namespace) -> int:
    registry = _registry_for(_settings_for(args))
    key = asyncio.run(registry.unified_api_key())
    if not key:
        print_error("No unified API key yet; add an endpoint first.")
        return 1
    print(key)
    return 0


def _add_store_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Path to the gateway config file.")
    parser.add_argument("--models-cache", help="Path to the model cache file.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="unified-gateway",
        description="Manage and run the unified OpenAI-compatible gateway.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_cmd = subparsers.add_parser("serve", help="Run the gateway HTTP server.")
    serve_cmd.add_argument("--host")
    serve_cmd.add_argument("--port", type=int)
    serve_cmd.set_defaults(handler=cmd_serve)

    endpoints_cmd = subparsers.add_parser("endpoints", help="Manage endpoints.")
    endpoint_subparsers = endpoints_cmd.add_subparsers(
        dest="endpoints_command", required=True
    )

    list_cmd = endpoint_subparsers.add_parser("list", help="List endpoints.")
    _add_store_arguments(list_cmd)
    list_cmd.set_defaults(handler=cmd_endpoints_list)

    add_cmd = endpoint_subparsers.add_parser(
        "add", help="Create an endpoint, or update it when --id already exists."
    )
    _add_store_arguments(add_cmd)
    add_cmd.add_argument("--id")
    add_cmd.add_argument("--name")
    add_cmd.add_argument("--base-url", dest="base_url")
    add_cmd.add_argument(
        "--auth-type", dest="auth_type", choices=["api-key", "oauth2"]
    )
    add_cmd.add_argument("--api-key", dest="api_key")
    add_cmd.add_argument("--token-url", dest="token_url")
    add_cmd.add_argument("--client-id", dest="client_id")
    add_cmd.add_argument("--client-secret", dest="client_secret")
    add_cmd.add_argument("--scope")
    add_cmd.set_defaults(handler=cmd_endpoints_add)

    remove_cmd = endpoint_subparsers.add_parser("remove", help="Delete an endpoint.")
    _add_store_arguments(remove_cmd)
    remove_cmd.add_argument("id")
    remove_cmd.set_defaults(handler=cmd_endpoints_remove)

    select_cmd = endpoint_subparsers.add_parser(
        "select", help="Set the current endpoint."
    )
    _add_store_arguments(select_cmd)
    select_cmd.add_argument("id")
    select_cmd.set_defaults(handler=cmd_endpoints_select)

    models_cmd = subparsers.add_parser("models", help="Manage the model cache.")
    models_subparsers = models_cmd.add_subparsers(dest="models_command", required=True)
    refresh_cmd = models_subparsers.add_parser(
        "refresh", help="Refetch every endpoint's model list."
    )
    _add_store_arguments(refresh_cmd)
    refresh_cmd.set_defaults(handler=cmd_models_refresh)

    key_cmd = subparsers.add_parser("key", help="Unified API key.")
    key_subparsers = key_cmd.add_subparsers(dest="key_command", required=True)
    show_cmd = key_subparsers.add_parser("show", help="Print the unified API key.")
    _add_store_arguments(show_cmd)
    show_cmd.set_defaults(handler=cmd_key_show)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler: Callable[[argparse.Namespace], int] = args.handler
    try:
        return handler(args)
    except GatewayError as exc:
        print_error(exc.message)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
