import asyncio
import logging
import os
import shutil
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


def read_server_properties(server_dir: str) -> Dict[str, str]:
    path = os.path.join(server_dir, "server.properties")
    if not os.path.exists(path):
        return {}
    properties: Dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or "=" not in stripped:
                continue
            key, value = stripped.split("=", 1)
            properties[key.strip()] = value.strip()
    return properties


def write_server_properties(server_dir: str, updates: Dict[str, str]) -> None:
    path = os.path.join(server_dir, "server.properties")
    os.makedirs(server_dir, exist_ok=True)
    lines: list[str] = ["# Minecraft server properties\n"]
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as handle:
            lines = handle.readlines()

    remaining = dict(updates)
    new_lines: list[str] = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in line:
            new_lines.append(line)
            continue
        key, _ = line.split("=", 1)
        key = key.strip()
        if key in remaining:
            new_lines.append(f"{key}={remaining.pop(key)}\n")
        else:
            new_lines.append(line)

    if new_lines and not new_lines[-1].endswith("\n"):
        new_lines[-1] += "\n"
    for key, value in remaining.items():
        new_lines.append(f"{key}={value}\n")

    with open(path, "w", encoding="utf-8") as handle:
        handle.writelines(new_lines)


def ensure_query_enabled(server_dir: str) -> bool:
    """Make sure the query protocol is on so readiness probes can use it.

    Returns True when the file had to be changed.
    """
    if read_server_properties(server_dir).get("enable-query") == "true":
        return False
    write_server_properties(server_dir, {"enable-query": "true"})
    logger.info("Ensured enable-query=true in %s/server.properties", server_dir)
    return True


def format_property_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def update_server_properties(server_dir: str, properties: Dict[str, Any]) -> Dict[str, str]:
    """Merge edited properties into the file; query always stays enabled."""
    updates = {key.strip(): format_property_value(value) for key, value in properties.items()}
    updates["enable-query"] = "true"
    write_server_properties(server_dir, updates)
    logger.info("Updated %d server properties in %s", len(updates), server_dir)
    return read_server_properties(server_dir)


def save_server_properties(server_dir: str, content: str) -> None:
    """Replace the file with raw editor content, then re-enable query if it was dropped."""
    os.makedirs(server_dir, exist_ok=True)
    with open(os.path.join(server_dir, "server.properties"), "w", encoding="utf-8") as handle:
        handle.write(content if content.endswith("\n") else content + "\n")
    ensure_query_enabled(server_dir)


def _remove_entry(path: str) -> None:
    if not os.path.lexists(path):
        return
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


async def empty_directory(
    path: str,
    retry_delay: float = 0.5,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[str]:
    """Delete everything inside ``path`` but keep the directory (it is a mount point).

    Each entry gets one retry. Returns the entries that could not be removed.
    """
    if not os.path.isdir(path):
        return []
    failed: list[str] = []
    for name in sorted(os.listdir(path)):
        entry = os.path.join(path, name)
        try:
            await asyncio.to_thread(_remove_entry, entry)
        except OSError as exc:
            logger.warning("Failed to delete %s (%s); retrying once", entry, exc)
            await sleep(retry_delay)
            try:
                await asyncio.to_thread(_remove_entry, entry)
            except OSError as retry_exc:
                logger.error("Giving up on %s: %s", entry, retry_exc)
                failed.append(entry)
    return failed
