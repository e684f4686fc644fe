"""Capability resolution: turn capability names into engine tool-provider descriptors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field

from agent_conductor.config.settings import Settings
from agent_conductor.credentials import CredentialCipher
from agent_conductor.errors import CredentialError
from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.models import ServiceConnectionRecord

logger = logging.getLogger(__name__)

RENDER_MCP_URL = "https://mcp.render.com/mcp"


class Capability(str, Enum):
    GITHUB = "github"
    GMAIL = "gmail"
    SLACK = "slack"
    SENTRY = "sentry"
    APPSTORE_CONNECT = "appstore_connect"
    META_ADS = "meta_ads"
    RENDER = "render"
    TASKS = "tasks"
    REPORTS = "reports"
    CAPABILITIES = "capabilities"


ALIASES: dict[str, Capability] = {
    "source-control": Capability.GITHUB,
    "email": Capability.GMAIL,
    "messaging": Capability.SLACK,
    "error-tracking": Capability.SENTRY,
    "hosting": Capability.RENDER,
    "task-management": Capability.TASKS,
    "reporting": Capability.REPORTS,
    "introspection": Capability.CAPABILITIES,
}


class StdioCapability(BaseModel):
    """A tool provider launched as a subprocess speaking MCP over stdio."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["stdio"] = "stdio"
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class HttpCapability(BaseModel):
    """A remote tool provider reached over HTTP."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["http"] = "http"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)


CapabilityDescriptor = StdioCapability | HttpCapability


@dataclass
class CapabilityContext:
    user_id: int
    agent_id: int | None
    storage: ConductorStorage
    settings: Settings
    cipher: CredentialCipher | None
    options: dict[str, Any] = field(default_factory=dict)

    async def connection(self, service_name: str) -> ServiceConnectionRecord | None:
        record = await self.storage.get_service_connection(self.user_id, service_name)
        if record is None or record.status != "connected":
            return None
        return record

    def secret(self, record: ServiceConnectionRecord, name: str) -> str | None:
        encrypted = record.credentials.get(name)
        if encrypted is None:
            return None
        if self.cipher is None:
            raise CredentialError("No encryption key configured")
        return self.cipher.decrypt(encrypted)


Builder = Callable[[CapabilityContext], Awaitable[CapabilityDescriptor | None]]


@dataclass(frozen=True)
class CapabilitySpec:
    builder: Builder
    service_name: str | None = None
    description: str = ""


def _npx(package: str, env: dict[str, str] | None = None) -> StdioCapability:
    return StdioCapability(command="npx", args=["-y", package], env=env or {})


def _internal(module: str, ctx: CapabilityContext) -> StdioCapability:
    args = ["-m", module, f"--user-id={ctx.user_id}"]
    if ctx.agent_id is not None:
        args.append(f"--agent-id={ctx.agent_id}")
    return StdioCapability(command=ctx.settings.capability_server_python, args=args)


async def _github(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    record = await ctx.connection("github")
    token = ctx.secret(record, "token") if record else None
    if not token:
        return None
    return _npx("@modelcontextprotocol/server-github", {"GITHUB_PERSONAL_ACCESS_TOKEN": token})


async def _gmail(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    # The provider reads its OAuth files from disk; only the connection is checked here.
    if await ctx.connection("gmail") is None:
        return None
    return _npx("@gongrzhe/server-gmail-autoauth-mcp")


async def _slack(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    record = await ctx.connection("slack")
    bot_token = ctx.secret(record, "bot_token") if record else None
    if not bot_token:
        return None
    env = {"SLACK_BOT_TOKEN": bot_token}
    user_token = ctx.secret(record, "user_token")
    if user_token:
        env["SLACK_USER_TOKEN"] = user_token
    team_id = record.metadata.get("team_id")
    if team_id:
        env["SLACK_TEAM_ID"] = str(team_id)
    return _npx("@modelcontextprotocol/server-slack", env)


async def _sentry(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    record = await ctx.connection("sentry")
    token = ctx.secret(record, "token") if record else None
    if not token:
        return None
    return _npx("@sentry/mcp-server", {"SENTRY_ACCESS_TOKEN": token})


async def _appstore_connect(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    record = await ctx.connection("appstore_connect")
    private_key = ctx.secret(record, "private_key") if record else None
    if not private_key:
        return None
    key_id = record.metadata.get("key_id")
    issuer_id = record.metadata.get("issuer_id")
    if not key_id or not issuer_id:
        logger.warning("capability event=incomplete name=appstore_connect missing=key_id|issuer_id")
        return None
    return _npx(
        "appstore-connect-mcp-server",
        {
            "APPSTORE_KEY_ID": str(key_id),
            "APPSTORE_ISSUER_ID": str(issuer_id),
            "APPSTORE_PRIVATE_KEY": private_key,
        },
    )


async def _meta_ads(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    record = await ctx.connection("meta_ads")
    token = ctx.secret(record, "token") if record else None
    if not token:
        return None
    account = record.metadata.get("primary_ad_account") or {}
    if not account.get("id"):
        logger.warning("capability event=incomplete name=meta_ads missing=primary_ad_account")
        return None
    return _npx(
        "meta-ads-mcp",
        {"META_ACCESS_TOKEN": token, "META_AD_ACCOUNT_ID": str(account["id"])},
    )


async def _render(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    record = await ctx.connection("render")
    api_key = ctx.secret(record, "api_key") if record else None
    if not api_key:
        return None
    return HttpCapability(url=RENDER_MCP_URL, headers={"Authorization": f"Bearer {api_key}"})


async def _tasks(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    return _internal("agent_conductor.capability_servers.tasks", ctx)


async def _reports(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    return _internal("agent_conductor.capability_servers.reports", ctx)


async def _capabilities(ctx: CapabilityContext) -> CapabilityDescriptor | None:
    return _internal("agent_conductor.capability_servers.introspection", ctx)


CAPABILITY_REGISTRY: dict[Capability, CapabilitySpec] = {
    Capability.GITHUB: CapabilitySpec(_github, "github", "Source control"),
    Capability.GMAIL: CapabilitySpec(_gmail, "gmail", "Email"),
    Capability.SLACK: CapabilitySpec(_slack, "slack", "Messaging"),
    Capability.SENTRY: CapabilitySpec(_sentry, "sentry", "Error tracking"),
    Capability.APPSTORE_CONNECT: CapabilitySpec(
        _appstore_connect, "appstore_connect", "App Store Connect"
    ),
    Capability.META_ADS: CapabilitySpec(_meta_ads, "meta_ads", "Meta advertising"),
    Capability.RENDER: CapabilitySpec(_render, "render", "Hosting"),
    Capability.TASKS: CapabilitySpec(_tasks, None, "Task management"),
    Capability.REPORTS: CapabilitySpec(_reports, None, "Dated business reports"),
    Capability.CAPABILITIES: CapabilitySpec(_capabilities, None, "Agent and routine introspection"),
}


def parse_capability(name: str) -> Capability | None:
    key = name.strip().lower()
    if key in ALIASES:
        return ALIASES[key]
    try:
        return Capability(key)
    except ValueError:
        return None


def _apply_overrides(
    descriptor: CapabilityDescriptor, overrides: dict[str, Any]
) -> CapabilityDescriptor:
    if not overrides:
        return descriptor
    if isinstance(descriptor, StdioCapability):
        update: dict[str, Any] = {}
        if "command" in overrides:
            update["command"] = str(overrides["command"])
        if "args" in overrides:
            update["args"] = [str(arg) for arg in overrides["args"]]
        if "env" in overrides:
            update["env"] = {**descriptor.env, **{k: str(v) for k, v in overrides["env"].items()}}
        return descriptor.model_copy(update=update)
    update = {}
    if "url" in overrides:
        update["url"] = str(overrides["url"])
    if "headers" in overrides:
        update["headers"] = {
            **descriptor.headers,
            **{k: str(v) for k, v in overrides["headers"].items()},
        }
    return descriptor.model_copy(update=update)


def merge_capability_config(
    agent_config: dict[str, Any], routine_config: dict[str, Any] | None = None
) -> tuple[list[str], dict[str, Any]]:
    """Combine agent and routine capability settings; routine keys win."""
    routine_config = routine_config or {}
    names = routine_config.get("capabilities") or agent_config.get("capabilities") or []
    options: dict[str, Any] = dict(agent_config.get("mcp_config") or {})
    options.update(routine_config.get("mcp_config") or {})
    return list(names), options


class CapabilityConfigurator:
    """Resolve capability names for one run into provider descriptors."""

    def __init__(
        self,
        storage: ConductorStorage,
        *,
        settings: Settings,
        cipher: CredentialCipher | None = None,
        registry: dict[Capability, CapabilitySpec] | None = None,
    ) -> None:
        self.storage = storage
        self.settings = settings
        self.cipher = cipher
        self.registry = registry or CAPABILITY_REGISTRY

    async def resolve(
        self,
        names: Iterable[str],
        *,
        user_id: int,
        agent_id: int | None,
        options: dict[str, Any] | None = None,
        suppress: Iterable[Capability] = (),
    ) -> dict[str, CapabilityDescriptor]:
        options = options or {}
        suppressed = set(suppress)
        resolved: dict[str, CapabilityDescriptor] = {}

        for name in names:
            capability = parse_capability(name)
            if capability is None:
                logger.warning("capability event=unknown name=%s agent_id=%s", name, agent_id)
                continue
            if capability in suppressed:
                logger.info("capability event=suppressed name=%s agent_id=%s", capability.value, agent_id)
                continue
            if capability.value in resolved:
                continue
            spec = self.registry.get(capability)
            if spec is None:
                logger.warning("capability event=unregistered name=%s", capability.value)
                continue

            overrides = options.get(capability.value) or {}
            ctx = CapabilityContext(
                user_id=user_id,
                agent_id=agent_id,
                storage=self.storage,
                settings=self.settings,
                cipher=self.cipher,
                options=overrides,
            )
            try:
                descriptor = await spec.builder(ctx)
            except CredentialError as exc:
                logger.warning(
                    "capability event=credential_error name=%s user_id=%s error=%s",
                    capability.value,
                    user_id,
                    exc,
                )
                continue
            if descriptor is None:
                logger.warning(
                    "capability event=missing_credential name=%s user_id=%s service=%s",
                    capability.value,
                    user_id,
                    spec.service_name,
                )
                continue
            resolved[capability.value] = _apply_overrides(descriptor, overrides)
            logger.info("capability event=configured name=%s agent_id=%s", capability.value, agent_id)

        return resolved


def describe_capabilities(descriptors: dict[str, CapabilityDescriptor]) -> list[dict[str, str]]:
    """Redacted summary of configured providers, safe to write into execution logs."""
    return [
        {"name": name, "type": descriptor.type}
        for name, descriptor in sorted(descriptors.items())
    ]
