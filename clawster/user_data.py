"""EC2 user data for the Caddy-on-VM architecture.

Caddy terminates :80 (or :443 for a custom domain) and reverse proxies to
the OpenClaw gateway container, which is published on 127.0.0.1 only.
"""

import base64
import re
import shlex
from textwrap import dedent

from .errors import ConfigurationError

DEFAULT_IMAGE = "ghcr.io/openclaw/openclaw:latest"
DEFAULT_SYSBOX_VERSION = "0.6.4"
DATA_DIR = "/opt/openclaw"

_ENV_KEY_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_RESERVED_ENV = ("OPENCLAW_GATEWAY_PORT", "OPENCLAW_GATEWAY_TOKEN")


def generate_caddyfile(gateway_port: int, domain: str | None = None) -> str:
    site = domain if domain else ":80"
    return dedent(f"""
        {site} {{
            reverse_proxy 127.0.0.1:{gateway_port}
        }}
    """).strip()


def _sysbox_section(version: str) -> str:
    tag = version if version.startswith("v") else f"v{version}"
    bare = tag[1:]
    return dedent(f"""
        # Install Sysbox runtime for sandboxed docker-in-docker
        if ! docker info --format '{{{{json .Runtimes}}}}' 2>/dev/null | grep -q 'sysbox-runc'; then
          echo "Installing Sysbox {tag}..."
          ARCH=$(dpkg --print-architecture)
          SYSBOX_DEB=/tmp/sysbox-ce.deb
          curl -fsSL "https://downloads.nestybox.com/sysbox/releases/{tag}/sysbox-ce_{bare}-0.linux_$ARCH.deb" -o "$SYSBOX_DEB"
          apt-get install -y "$SYSBOX_DEB" || (dpkg -i "$SYSBOX_DEB" && apt-get install -f -y)
          rm -f "$SYSBOX_DEB"
          systemctl restart docker
        fi
    """).strip()


def _caddy_section(gateway_port: int, domain: str | None) -> str:
    caddyfile = generate_caddyfile(gateway_port, domain)
    return dedent("""
        # Install Caddy from the official apt repository
        if ! command -v caddy >/dev/null 2>&1; then
          apt-get install -y debian-keyring debian-archive-keyring apt-transport-https gnupg
          curl -1sLf 'https://dl.cloudsmith.io/public/caddy/stable/gpg.key' | gpg --dearmor -o /usr/share/keyrings/caddy-stable-archive-keyring.gpg
          curl -1sLf 'https://dl.cloudsmith.io/public/caddy/stable/debian.deb.txt' > /etc/apt/sources.list.d/caddy-stable.list
          apt-get update
          apt-get install -y caddy
        fi
        cat > /etc/caddy/Caddyfile <<'CADDYFILE'
        {caddyfile}
        CADDYFILE
        systemctl enable caddy
        systemctl restart caddy
    """).strip().format(caddyfile=caddyfile)


def _fetch_config_section(secret_name: str, region: str) -> str:
    return dedent(f"""
        # Fetch gateway config from Secrets Manager using the instance role
        fetch_secret_value() {{
          aws secretsmanager get-secret-value \\
            --region {shlex.quote(region)} \\
            --secret-id "$1" \\
            --query SecretString \\
            --output text
        }}

        mkdir -p {DATA_DIR}/.openclaw
        CONFIG_JSON=""
        for ATTEMPT in 1 2 3 4 5; do
          CONFIG_JSON=$(fetch_secret_value {shlex.quote(secret_name)} 2>/dev/null) && break
          echo "Waiting for secretsmanager access (attempt $ATTEMPT)..."
          sleep 5
        done
        GATEWAY_TOKEN=""
        if [ -n "$CONFIG_JSON" ] && [ "$CONFIG_JSON" != "{{}}" ]; then
          echo "$CONFIG_JSON" > {DATA_DIR}/.openclaw/openclaw.json
          GATEWAY_TOKEN=$(echo "$CONFIG_JSON" | jq -r '.gateway.auth.token // empty')
        fi
    """).strip()


def _container_section(
    gateway_port: int, image_uri: str, additional_env: dict[str, str] | None
) -> str:
    env_lines = ""
    for key, value in (additional_env or {}).items():
        if not _ENV_KEY_RE.fullmatch(key):
            raise ConfigurationError(f"Invalid environment variable name: '{key}'")
        env_lines += f"  -e {shlex.quote(f'{key}={value}')} \\\n"
    return (
        dedent(f"""
            # Run the OpenClaw gateway, published on loopback only
            docker pull {image_uri}
            DOCKER_RUNTIME=""
            if docker info --format '{{{{json .Runtimes}}}}' 2>/dev/null | grep -q 'sysbox-runc'; then
              DOCKER_RUNTIME="--runtime=sysbox-runc"
            fi
            docker rm -f openclaw-gateway 2>/dev/null || true
            docker run -d \\
              --name openclaw-gateway \\
              --restart=always \\
              $DOCKER_RUNTIME \\
              -p 127.0.0.1:{gateway_port}:{gateway_port} \\
              -v {DATA_DIR}/.openclaw:/root/.openclaw \\
              -e OPENCLAW_GATEWAY_PORT={gateway_port} \\
              -e OPENCLAW_GATEWAY_TOKEN="$GATEWAY_TOKEN" \\
            """).lstrip()
        + env_lines
        + f"  {image_uri} \\\n"
        + f"  openclaw gateway --port {gateway_port} --verbose"
    )


def build_caddy_user_data(
    gateway_port: int,
    secret_name: str,
    region: str,
    *,
    image_uri: str = DEFAULT_IMAGE,
    custom_domain: str | None = None,
    additional_env: dict[str, str] | None = None,
    sysbox_version: str = DEFAULT_SYSBOX_VERSION,
) -> str:
    """Build the bash user data script for a bot instance.

    The script is safe to re-run: a marker file short-circuits package
    installation on reboot while the container is always recreated.

    :param secret_name: Secrets Manager secret holding the gateway config
    :param custom_domain: Caddy serves this domain with automatic TLS when set
    :param additional_env: Extra container environment variables, shell-quoted
    :raises ConfigurationError: if a variable name is not a valid identifier
    """
    header = dedent(f"""
        #!/bin/bash
        set -euo pipefail
        exec > >(tee -a /var/log/clawster-user-data.log) 2>&1

        MARKER=/var/lib/clawster/provisioned
        if [ ! -f "$MARKER" ]; then
          export DEBIAN_FRONTEND=noninteractive
          apt-get update
          apt-get install -y docker.io jq curl unzip
          systemctl enable --now docker
          if ! command -v aws >/dev/null 2>&1; then
            curl -fsSL https://awscli.amazonaws.com/awscli-exe-linux-x86_64.zip -o /tmp/awscliv2.zip
            unzip -q /tmp/awscliv2.zip -d /tmp
            /tmp/aws/install
          fi
          mkdir -p /var/lib/clawster
          touch "$MARKER"
        fi
    """).strip()
    sections = [
        header,
        _sysbox_section(sysbox_version),
        _caddy_section(gateway_port, custom_domain),
        _fetch_config_section(secret_name, region),
        _container_section(gateway_port, image_uri, additional_env),
    ]
    return "\n\n".join(sections) + "\n"


def encode_user_data(script: str) -> str:
    return base64.b64encode(script.encode()).decode()


def parse_container_settings(script: str) -> tuple[str | None, dict[str, str]]:
    """Read the image and extra environment back out of a generated script.

    :return: (image_uri, additional_env); image_uri is None if no pull line exists
    """
    match = re.search(r"^docker pull (\S+)$", script, re.MULTILINE)
    image_uri = match.group(1) if match else None

    env = {}
    for line in script.splitlines():
        if not line.startswith("  -e "):
            continue
        key, _, value = shlex.split(line.rstrip(" \\"))[1].partition("=")
        if key not in _RESERVED_ENV:
            env[key] = value
    return image_uri, env
