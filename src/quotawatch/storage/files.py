import json
import os
import tempfile
from pathlib import Path


def atomic_write_text(path: "Path", text: "str", mode: "int | None" = None) -> "None":
    """
    writes text next to the destination and renames it into place, so a
    crash mid-write leaves the previous file intact.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_write_json(path: "Path", payload: "object", mode: "int | None" = None) -> "None":
    atomic_write_text(path, json.dumps(payload, indent=2), mode=mode)


def read_json(path: "Path") -> "object":
    """
    reads and decodes a JSON file. OSError and ValueError are left to
    the caller, which decides whether a missing file is fatal.
    """
    return json.loads(path.read_text(encoding="utf-8"))
