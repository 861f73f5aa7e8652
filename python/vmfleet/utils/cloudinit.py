"""
vmfleet/utils/cloudinit.py

Seed configuration for new nodes, in cloud-init NoCloud format:
  - render_user_data: #cloud-config with hostname, timezone and the admin user.
  - render_meta_data: instance-id / local-hostname.
  - build_seed_image: packs both into an ISO9660 "cidata" image with
    `cloud-localds`, inside an ephemeral directory, and returns its bytes.
"""

from __future__ import annotations

from typing import Any, Dict

import aiofiles
import yaml
from pydantic import BaseModel

from vmfleet.models.validator import validate_type
from vmfleet.utils.async_command_runner import run_command
from vmfleet.utils.ephemeral_file import ephemeral_manager


class SeedConfig(BaseModel):
    hostname: str
    ssh_user: str
    ssh_public_key: str
    timezone: str
    instance_id: str


def render_user_data(seed: SeedConfig) -> str:
    doc: Dict[str, Any] = {
        "hostname": seed.hostname,
        "fqdn": seed.hostname,
        "preserve_hostname": False,
        "manage_etc_hosts": True,
        "timezone": seed.timezone,
        "ssh_pwauth": False,
        "disable_root": True,
        "users": [
            {
                "name": seed.ssh_user,
                "groups": ["sudo"],
                "shell": "/bin/bash",
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "lock_passwd": True,
                "ssh_authorized_keys": [seed.ssh_public_key],
            }
        ],
        "package_update": True,
        "packages": ["qemu-guest-agent"],
        "runcmd": [["systemctl", "enable", "--now", "qemu-guest-agent"]],
    }
    return "#cloud-config\n" + yaml.safe_dump(doc, sort_keys=False)


def render_meta_data(seed: SeedConfig) -> str:
    return yaml.safe_dump(
        {"instance-id": seed.instance_id, "local-hostname": seed.hostname},
        sort_keys=False,
    )


async def build_seed_image(seed: SeedConfig) -> bytes:
    """
    Build the NoCloud seed ISO for `seed`.

    Raises:
        CommandError: if cloud-localds is missing or fails.
    """
    async with ephemeral_manager(
        file_names=["user-data", "meta-data", "seed.iso"],
        prefix="vmfleet-seed-",
    ) as paths_union:
        paths = validate_type(paths_union, Dict[str, str])

        async with aiofiles.open(paths["user-data"], "w", encoding="utf-8") as fud:
            await fud.write(render_user_data(seed))
        async with aiofiles.open(paths["meta-data"], "w", encoding="utf-8") as fmd:
            await fmd.write(render_meta_data(seed))

        await run_command(
            ["cloud-localds", paths["seed.iso"], paths["user-data"], paths["meta-data"]],
            sensitive=False,
            retries=1,
        )

        async with aiofiles.open(paths["seed.iso"], "rb") as fiso:
            return await fiso.read()
