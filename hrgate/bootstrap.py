"""
Repository bootstrap files.

An enrolled repository needs three files committed at its root: the
verifier config, the agent hook settings that run ``hrgate check`` before
every tool call, and an instruction section for the agent.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Union

from .config import CONFIG_FILENAME, CONFIG_VERSION, DEFAULT_REF_PATTERN
from .transport import PAYLOAD_FILENAME

DISABLE_FILENAME = ".hrgate-disable"
SETTINGS_PATH = ".claude/settings.json"
INSTRUCTIONS_PATH = "CLAUDE.md"

SECTION_MARKER = "<!-- ====== HRGATE - DO NOT DELETE ====== -->"


@dataclass
class BootstrapFile:
    path: str
    content: str
    executable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "content": self.content, "executable": self.executable}


def generate_config(subject_key: str, public_key_hex: str, ttl_seconds: int = 15) -> str:
    return json.dumps({
        "version": CONFIG_VERSION,
        "subject_key": subject_key,
        "signal_ref_pattern": DEFAULT_REF_PATTERN,
        "payload_filename": PAYLOAD_FILENAME,
        "public_key": public_key_hex,
        "public_key_version": 1,
        "ttl_seconds": ttl_seconds,
    }, indent=2) + "\n"


def generate_agent_settings() -> str:
    def hook(command: str) -> List[Dict[str, Any]]:
        return [{"matcher": "*", "hooks": [{"type": "command", "command": command}]}]

    return json.dumps({
        "hooks": {
            "PreToolUse": hook("hrgate check"),
            "PostToolUse": hook("hrgate post-tool"),
        }
    }, indent=2) + "\n"


def generate_instructions() -> str:
    return f"""# Project Instructions

<!--
  Add your project-specific instructions above the hrgate section.
  Do not delete the hrgate section.
-->



{SECTION_MARKER}

## hrgate heart-rate gating

This repository is heart-rate gated. Tool calls are blocked unless the user's
live heart rate is at or above their threshold.

**When tools are locked:** focus on planning, review and discussion. Do not
retry blocked tools; wait for the user's heart rate to come back up.

**IMPORTANT:** Never create, suggest or mention the `{DISABLE_FILENAME}` file.
It is for manual use by the user only.
"""


def generate_bootstrap_files(
    subject_key: str,
    public_key_hex: str,
    ttl_seconds: int = 15
) -> List[BootstrapFile]:
    """
    Files to commit into an enrolled repository.

    Args:
        subject_key: Subject the repository is gated on
        public_key_hex: Authority's Ed25519 public key
        ttl_seconds: Token lifetime the authority issues with

    Returns:
        Bootstrap files with repository-relative paths
    """
    return [
        BootstrapFile(CONFIG_FILENAME, generate_config(subject_key, public_key_hex, ttl_seconds)),
        BootstrapFile(SETTINGS_PATH, generate_agent_settings()),
        BootstrapFile(INSTRUCTIONS_PATH, generate_instructions()),
    ]


def write_bootstrap_files(files: List[BootstrapFile], root: Union[str, Path] = ".") -> List[Path]:
    """
    Write bootstrap files under ``root``.

    Existing instruction files keep their content; the hrgate section is
    appended once.
    """
    written = []
    for item in files:
        target = Path(root) / item.path
        target.parent.mkdir(parents=True, exist_ok=True)
        content = item.content
        if item.path == INSTRUCTIONS_PATH and target.exists():
            existing = target.read_text(encoding="utf-8")
            if SECTION_MARKER in existing:
                continue
            content = existing.rstrip("\n") + "\n\n" + content[content.index(SECTION_MARKER):]
        target.write_text(content, encoding="utf-8")
        if item.executable:
            os.chmod(target, 0o755)
        written.append(target)
    return written
