"""OpenClaw config rewrites applied before a config is stored for a bot."""

import copy

TRUSTED_PROXIES = ["172.17.0.0/16"]


def transform_config(config: dict) -> dict:
    """Return a copy of config with OpenClaw compatibility rewrites applied.

    - gateway.host is renamed to gateway.bind (unless bind is already set)
    - root-level sandbox moves to agents.defaults.sandbox
    - channels.*.enabled flags are dropped
    - skills.allowUnverified is dropped
    """
    result = copy.deepcopy(config)

    gateway = result.get("gateway")
    if isinstance(gateway, dict) and "host" in gateway and "bind" not in gateway:
        gateway["bind"] = gateway.pop("host")

    if result.get("sandbox"):
        agents = result.setdefault("agents", {})
        defaults = agents.setdefault("defaults", {})
        if not defaults.get("sandbox"):
            defaults["sandbox"] = result.pop("sandbox")

    channels = result.get("channels")
    if isinstance(channels, dict):
        for channel in channels.values():
            if isinstance(channel, dict):
                channel.pop("enabled", None)

    skills = result.get("skills")
    if isinstance(skills, dict):
        skills.pop("allowUnverified", None)

    return result


def apply_gateway_overrides(config: dict, gateway_port: int | None = None) -> dict:
    """Force the gateway settings a Caddy-fronted container needs.

    The gateway listens on the LAN interface so Caddy on the docker bridge can
    reach it, and trusts the bridge subnet for forwarded headers. An explicit
    gateway.port is kept; otherwise gateway_port is used when given.
    """
    result = copy.deepcopy(config)
    gateway = dict(result.get("gateway") or {})
    gateway.pop("host", None)
    gateway["bind"] = "lan"
    gateway.setdefault("mode", "local")
    gateway["trustedProxies"] = list(TRUSTED_PROXIES)
    if "port" not in gateway and gateway_port is not None:
        gateway["port"] = gateway_port
    result["gateway"] = gateway
    return result
