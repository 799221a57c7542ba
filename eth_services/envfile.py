"""
Reading and rewriting per-service .env files.

Updates keep every line that is not touched (comments, ordering, unknown
keys) and replace the file atomically, after copying the previous version
to ``.env.bak``.
"""
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Mapping

logger = logging.getLogger(__name__)

ENV_FILE = '.env'
BACKUP_SUFFIX = '.bak'


def write_atomic(path, content: str):
    """Write ``content`` to ``path`` through a temp file in the same directory"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}-", suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_env(path) -> Dict[str, str]:
    """Parse KEY=value lines; comments and blank lines are skipped"""
    values = {}
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, _, value = line.partition('=')
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]
            values[key.strip()] = value
    return values


def render_env(values: Mapping[str, str], header: str = '') -> str:
    lines = [f"# {line}" for line in header.splitlines()] if header else []
    lines += [f"{key}={value}" for key, value in values.items()]
    return '\n'.join(lines) + '\n'


def update_env(path, updates: Mapping[str, str], backup: bool = True) -> Path:
    """
    Set keys in an existing .env file.

    Args:
        path: .env file to rewrite
        updates: key -> new value; keys not yet present are appended
        backup: copy the current file to ``<path>.bak`` first

    Returns:
        Path of the rewritten file
    """
    path = Path(path)
    with open(path, 'r') as f:
        lines = f.read().split('\n')
    if lines and lines[-1] == '':
        lines.pop()

    pending = dict(updates)
    for i, line in enumerate(lines):
        key = line.split('=', 1)[0].strip()
        if '=' in line and not line.lstrip().startswith('#') and key in pending:
            lines[i] = f"{key}={pending.pop(key)}"
    for key, value in pending.items():
        lines.append(f"{key}={value}")

    if backup:
        shutil.copy2(path, path.with_name(path.name + BACKUP_SUFFIX))
    write_atomic(path, '\n'.join(lines) + '\n')
    logger.debug(f"Updated {', '.join(updates)} in {path}")
    return path


def split_endpoints(value: str) -> List[str]:
    return [v.strip() for v in (value or '').split(',') if v.strip()]


def join_endpoints(endpoints) -> str:
    return ','.join(endpoints)
