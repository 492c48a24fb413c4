"""Render the cloud-init user data that bootstraps the workspace agent.

Rendering is a two stage pipeline. The template text is substituted first,
then parsed as YAML and checked against the write_files/runcmd shape that
cloud-init consumes. The parsed document is what gets serialized for the
secret, so no template artifacts ever reach the VM.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any, Dict

import yaml

from ..errors import DocumentParseError, TemplateSubstitutionError
from .credentials import BootstrapCredential

CLOUD_CONFIG_HEADER = "#cloud-config"
TEMPLATE_PATH = Path(__file__).parent / "templates" / "cloud-config.yaml.tmpl"
INIT_SCRIPT_PATH = "/opt/workspace-agent/init.urlencoded"
TOKEN_PATH = "/opt/workspace-agent/token"

# Output alphabet of urllib.parse.quote(safe="").
_URL_ENCODED = re.compile(r"(?:[A-Za-z0-9_.~-]|%[0-9A-Fa-f]{2})*")


@dataclass(frozen=True)
class CloudInitDocument:
    """Parsed cloud-config with a canonical serialized form."""

    data: Dict[str, Any]

    def serialize(self) -> str:
        body = yaml.safe_dump(self.data, sort_keys=True, default_flow_style=False, allow_unicode=True)
        return f"{CLOUD_CONFIG_HEADER}\n{body}"

    def file_content(self, path: str) -> Any:
        for entry in self.data.get("write_files", []):
            if entry.get("path") == path:
                return entry.get("content")
        return None


def load_template(path: Path = TEMPLATE_PATH) -> str:
    """Read the packaged cloud-config template."""

    return path.read_text(encoding="utf-8")


def _substitute(template: str, values: Dict[str, str]) -> str:
    try:
        return Template(template).substitute(values)
    except KeyError as exc:
        raise TemplateSubstitutionError(f"Template references unknown placeholder {exc.args[0]!r}") from exc
    except ValueError as exc:
        raise TemplateSubstitutionError(f"Template contains an invalid placeholder: {exc}") from exc


def _parse(rendered: str) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(rendered)
    except yaml.YAMLError as exc:
        # The snippet in str(exc) may quote the token, so only position and problem are kept.
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
        problem = getattr(exc, "problem", None) or exc.__class__.__name__
        raise DocumentParseError(f"Rendered cloud-config is not valid YAML{where}: {problem}") from None
    if not isinstance(data, dict):
        raise DocumentParseError("Rendered cloud-config must be a mapping of directives")
    write_files = data.get("write_files")
    if not isinstance(write_files, list) or not write_files:
        raise DocumentParseError("Rendered cloud-config must declare a non-empty write_files list")
    for entry in write_files:
        if not isinstance(entry, dict) or not isinstance(entry.get("path"), str) or "content" not in entry:
            raise DocumentParseError("Every write_files entry needs a path and a content")
    if not isinstance(data.get("runcmd"), list):
        raise DocumentParseError("Rendered cloud-config must declare a runcmd list")
    return data


def render(
    template: str,
    credential: BootstrapCredential,
    *,
    hostname: str,
    username: str,
) -> CloudInitDocument:
    """Substitute the credential into ``template`` and return the parsed document.

    ``credential.init_script`` is expected URL-encoded already; the agent
    token is embedded as-is. Both have to come out of the parse unchanged,
    otherwise the substitution corrupted them and the render fails. An init
    script that is not URL-encoded is rejected before substitution.
    """

    if not _URL_ENCODED.fullmatch(credential.init_script):
        raise TemplateSubstitutionError("Init script must be URL-encoded before it is rendered")
    rendered = _substitute(
        template,
        {
            "hostname": hostname,
            "username": username,
            "init_script": credential.init_script,
            "agent_token": credential.agent_token,
        },
    )
    document = CloudInitDocument(data=_parse(rendered))
    if document.file_content(INIT_SCRIPT_PATH) != credential.init_script:
        raise TemplateSubstitutionError(f"Init script was altered while rendering {INIT_SCRIPT_PATH}")
    if document.file_content(TOKEN_PATH) != credential.agent_token:
        raise TemplateSubstitutionError(f"Agent token was altered while rendering {TOKEN_PATH}")
    return document


__all__ = ["CloudInitDocument", "load_template", "render", "INIT_SCRIPT_PATH", "TOKEN_PATH"]
