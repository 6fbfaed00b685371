"""Base images: versioned snapshots of fully bootstrapped VMs."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from aivm.vm.base import VM

BASE_IMAGE_FILE = "base-image.json"
VM_IMAGE_REF_FILE = "vm-image-ref"
_CREATED_AT_FILE = "vm-created-at"
_SECONDS_PER_DAY = 86400

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIME = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})")
_EPOCH = re.compile(r"[+-]?\d+")

logger = logging.getLogger("aivm.vm")


@dataclass
class BaseImage:
    """Metadata of the base image new VMs are created from."""

    id: str
    snapshot_name: str = ""
    created_at: datetime = field(default=_ZERO_TIME)


def _format_time(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    return text + "Z"


def _parse_time(text: str) -> datetime:
    match = _TIME.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid time {text!r}")
    base, fraction, zone = match.groups()
    if fraction:
        base += "." + fraction[1:7].ljust(6, "0")
    return datetime.fromisoformat(base + ("+00:00" if zone == "Z" else zone))


def _image_to_json(img: BaseImage) -> str:
    return json.dumps(
        {
            "id": img.id,
            "snapshot_name": img.snapshot_name,
            "created_at": _format_time(img.created_at),
        },
        indent=2,
    )


def _image_from_json(text: str) -> BaseImage:
    data: Any = json.loads(text)
    if data is None:
        return BaseImage(id="")
    if not isinstance(data, dict):
        raise ValueError("base image must be an object")
    image_id = data.get("id") or ""
    snapshot = data.get("snapshot_name") or ""
    created = data.get("created_at")
    if not isinstance(image_id, str) or not isinstance(snapshot, str):
        raise ValueError("base image fields must be strings")
    if created is None:
        created_at = _ZERO_TIME
    elif isinstance(created, str):
        created_at = _parse_time(created)
    else:
        raise ValueError("created_at must be a string")
    return BaseImage(id=image_id, snapshot_name=snapshot, created_at=created_at)


class ImageManager:
    """Records, restores and ages base images for one VM."""

    def __init__(self, vm: VM, state_dir: str | os.PathLike[str]) -> None:
        self.vm = vm
        self.state_dir = Path(state_dir)

    def _write_base_image(self, img: BaseImage) -> None:
        (self.state_dir / BASE_IMAGE_FILE).write_text(_image_to_json(img))

    def save_base_image(self) -> BaseImage:
        """Record the current VM state as the base image.

        The metadata is always written; a VM snapshot is attempted as a
        best effort and its name recorded only when it succeeds.
        """
        image_id = str(int(time.time()))
        snapshot_name = "aivm-base-" + image_id
        img = BaseImage(id=image_id, created_at=datetime.now(timezone.utc))

        try:
            self._write_base_image(img)
        except OSError as exc:
            raise OSError(f"recording base image metadata: {exc}") from exc

        try:
            self.vm.create_snapshot(snapshot_name)
        except Exception as exc:
            logger.debug("VM snapshot unavailable (non-fatal): %s", exc)
        else:
            img.snapshot_name = snapshot_name
            try:
                self._write_base_image(img)
            except OSError:
                pass
            logger.info("base image saved: %s (id=%s)", snapshot_name, image_id)

        logger.info("base image recorded: id=%s", image_id)
        return img

    def load_base_image(self) -> BaseImage | None:
        """The current base image, or None if none is recorded or readable."""
        try:
            text = (self.state_dir / BASE_IMAGE_FILE).read_text()
        except OSError:
            return None
        try:
            return _image_from_json(text)
        except ValueError:
            return None

    def try_restore_base_image(self) -> bool:
        """Restore the VM from the base image snapshot; False means bootstrap is needed."""
        img = self.load_base_image()
        if img is None or not img.snapshot_name:
            logger.debug("no restorable base image snapshot — will run bootstrap")
            return False
        try:
            found = self.vm.restore_snapshot(img.snapshot_name)
        except Exception as exc:
            logger.debug("base image restore error: %s", exc)
            return False
        if not found:
            logger.debug(
                "base image snapshot '%s' not found — will run bootstrap", img.snapshot_name
            )
            return False
        logger.info(
            "restored from base image '%s' (id=%s) — bootstrap skipped",
            img.snapshot_name, img.id,
        )
        self.record_vm_image_ref(img.id)
        return True

    def record_vm_image_ref(self, image_id: str) -> None:
        """Remember which base image the VM was created from."""
        try:
            (self.state_dir / VM_IMAGE_REF_FILE).write_text(image_id)
        except OSError:
            pass

    def get_vm_image_ref(self) -> str:
        """The base image id the VM was created from, or "" if unknown."""
        try:
            return (self.state_dir / VM_IMAGE_REF_FILE).read_text()
        except OSError:
            return ""

    def record_creation(self) -> None:
        """Record now as the VM creation time."""
        try:
            (self.state_dir / _CREATED_AT_FILE).write_text(str(int(time.time())))
        except OSError as exc:
            logger.warning("image manager: write vm-created-at: %s", exc)

    def age_days(self) -> int:
        """Whole days since the VM was created; 0 if unknown."""
        try:
            text = (self.state_dir / _CREATED_AT_FILE).read_text()
        except OSError:
            return 0
        if not _EPOCH.fullmatch(text):
            return 0
        return int((time.time() - int(text)) / _SECONDS_PER_DAY)

    def base_image_age_days(self) -> int:
        """Whole days since the base image was created; 0 if there is none."""
        img = self.load_base_image()
        if img is None:
            return 0
        elapsed = datetime.now(timezone.utc) - img.created_at
        return int(elapsed.total_seconds() / _SECONDS_PER_DAY)