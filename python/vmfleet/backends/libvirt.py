"""
vmfleet/backends/libvirt.py

HypervisorBackend implemented on top of the `virsh` CLI (libvirt/KVM).

Volumes live in a libvirt storage pool; node root disks are copy-on-write
overlays of the base image volume, seed disks are raw volumes holding the
cloud-init ISO. VMs are attached to a libvirt network with DHCP, and leases
are read back from `virsh net-dhcp-leases`.

All create operations are idempotent by name; destroy/delete return False
when the resource is already gone.
"""

from __future__ import annotations

import asyncio
import logging
import re
import textwrap
from typing import List, Optional
from xml.sax.saxutils import escape

import aiofiles

from vmfleet.backends.base import DhcpLease, HypervisorBackend, VMDefinition, VMInfo
from vmfleet.errors import ProvisionError
from vmfleet.models.validator import validate_type
from vmfleet.utils.async_command_runner import CommandResult, run_command_result
from vmfleet.utils.ephemeral_file import ephemeral_manager

logger = logging.getLogger(__name__)

_MAC_RE = re.compile(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$", re.IGNORECASE)
_MISSING_MARKERS = (
    "domain not found",
    "failed to get domain",
    "storage volume not found",
    "no storage vol with matching",
    "failed to get vol",
)


def _is_missing(stderr: str) -> bool:
    lower = stderr.lower()
    return any(marker in lower for marker in _MISSING_MARKERS)


def _table_rows(output: str) -> List[List[str]]:
    """Rows of a virsh table (everything below the dashed separator)."""
    lines = output.splitlines()
    sep = next((i for i, ln in enumerate(lines) if ln.strip().startswith("---")), None)
    body = lines[sep + 1 :] if sep is not None else lines
    return [ln.split() for ln in body if ln.strip()]


def parse_domiflist(output: str) -> List[str]:
    """MAC addresses from `virsh domiflist` output."""
    return [
        row[-1].lower() for row in _table_rows(output) if row and _MAC_RE.match(row[-1])
    ]


def parse_dhcp_leases(output: str) -> List[DhcpLease]:
    """
    Parse `virsh net-dhcp-leases` output:

      Expiry Time           MAC address         Protocol   IP address          Hostname   Client ID or DUID
     ---------------------------------------------------------------------------------------------------------
      2024-05-01 10:00:00   52:54:00:6b:3c:58   ipv4       192.168.122.10/24   cp00       01:52:54:00:6b:3c:58
    """
    leases: List[DhcpLease] = []
    for row in _table_rows(output):
        mac = next((tok for tok in row if _MAC_RE.match(tok)), None)
        ip_tok = next((tok for tok in row if "/" in tok and "." in tok), None)
        if mac is None or ip_tok is None:
            continue
        ip_idx = row.index(ip_tok)
        hostname = row[ip_idx + 1] if len(row) > ip_idx + 1 else None
        leases.append(
            DhcpLease(
                mac=mac.lower(),
                ip=ip_tok.split("/")[0],
                hostname=None if hostname in (None, "-") else hostname,
            )
        )
    return leases


def render_domain_xml(definition: VMDefinition) -> str:
    d = {k: escape(str(v)) for k, v in definition.model_dump().items()}
    return textwrap.dedent(
        f"""\
        <domain type='kvm'>
          <name>{d["name"]}</name>
          <memory unit='MiB'>{d["memory_mib"]}</memory>
          <vcpu>{d["cpus"]}</vcpu>
          <os>
            <type arch='x86_64' machine='q35'>hvm</type>
            <boot dev='hd'/>
          </os>
          <features><acpi/><apic/></features>
          <cpu mode='host-passthrough'/>
          <devices>
            <disk type='volume' device='disk'>
              <driver name='qemu' type='qcow2'/>
              <source pool='{d["pool"]}' volume='{d["root_volume"]}'/>
              <target dev='vda' bus='virtio'/>
            </disk>
            <disk type='volume' device='cdrom'>
              <driver name='qemu' type='raw'/>
              <source pool='{d["pool"]}' volume='{d["seed_volume"]}'/>
              <target dev='sda' bus='sata'/>
              <readonly/>
            </disk>
            <interface type='network'>
              <source network='{d["network"]}'/>
              <mac address='{d["mac"]}'/>
              <model type='virtio'/>
            </interface>
            <serial type='pty'><target port='0'/></serial>
            <console type='pty'><target type='serial' port='0'/></console>
            <channel type='unix'>
              <target type='virtio' name='org.qemu.guest_agent.0'/>
            </channel>
          </devices>
        </domain>
        """
    )


class LibvirtBackend(HypervisorBackend):
    def __init__(self, uri: str = "qemu:///system", command_timeout: float = 300.0) -> None:
        self.uri = uri
        self.command_timeout = command_timeout

    async def _virsh(self, *args: str) -> CommandResult:
        return await run_command_result(
            ["virsh", "--connect", self.uri, *args], timeout=self.command_timeout
        )

    async def _virsh_ok(self, *args: str) -> str:
        result = await self._virsh(*args)
        if result.return_code != 0:
            raise ProvisionError(f"virsh {args[0]} failed: {result.stderr or result.stdout}")
        return result.stdout

    async def _volume_path(self, pool: str, name: str) -> Optional[str]:
        result = await self._virsh("vol-path", "--pool", pool, name)
        if result.return_code == 0:
            return result.stdout.strip()
        if _is_missing(result.stderr):
            return None
        raise ProvisionError(f"virsh vol-path failed: {result.stderr}")

    async def _domain_state(self, name: str) -> Optional[str]:
        result = await self._virsh("domstate", name)
        if result.return_code == 0:
            return result.stdout.strip().lower()
        if _is_missing(result.stderr):
            return None
        raise ProvisionError(f"virsh domstate failed: {result.stderr}")

    async def clone_volume(
        self, pool: str, source: str, name: str, capacity_bytes: int
    ) -> str:
        existing = await self._volume_path(pool, name)
        if existing is not None:
            logger.info("Volume %s/%s already present; reusing.", pool, name)
            return existing

        if await self._volume_path(pool, source) is None:
            raise ProvisionError(f"Base image volume '{source}' not found in pool '{pool}'.")

        await self._virsh_ok(
            "vol-create-as",
            "--pool",
            pool,
            "--name",
            name,
            "--capacity",
            str(capacity_bytes),
            "--format",
            "qcow2",
            "--backing-vol",
            source,
            "--backing-vol-format",
            "qcow2",
        )
        path = await self._volume_path(pool, name)
        if path is None:
            raise ProvisionError(f"Volume '{name}' vanished right after creation.")
        return path

    async def create_volume(
        self,
        pool: str,
        name: str,
        capacity_bytes: int,
        content: Optional[bytes] = None,
    ) -> str:
        path = await self._volume_path(pool, name)
        if path is None:
            await self._virsh_ok(
                "vol-create-as",
                "--pool",
                pool,
                "--name",
                name,
                "--capacity",
                str(capacity_bytes),
                "--format",
                "raw",
            )
            path = await self._volume_path(pool, name)
            if path is None:
                raise ProvisionError(f"Volume '{name}' vanished right after creation.")

        if content is not None:
            # Re-upload even for an existing volume: an interrupted upload must not stick.
            async with ephemeral_manager(
                single_file_name="payload", prefix="vmfleet-vol-"
            ) as path_union:
                payload_path = validate_type(path_union, str)
                async with aiofiles.open(payload_path, "wb") as fpay:
                    await fpay.write(content)
                await self._virsh_ok("vol-upload", "--pool", pool, name, payload_path)
        return path

    async def delete_volume(self, pool: str, name: str) -> bool:
        result = await self._virsh("vol-delete", "--pool", pool, name)
        if result.return_code == 0:
            return True
        if _is_missing(result.stderr):
            return False
        raise ProvisionError(f"virsh vol-delete failed: {result.stderr}")

    async def create_vm(self, definition: VMDefinition) -> str:
        state = await self._domain_state(definition.name)
        if state is None:
            async with ephemeral_manager(
                single_file_name="domain.xml", prefix="vmfleet-dom-"
            ) as path_union:
                xml_path = validate_type(path_union, str)
                async with aiofiles.open(xml_path, "w", encoding="utf-8") as fxml:
                    await fxml.write(render_domain_xml(definition))
                await self._virsh_ok("define", xml_path)
            state = "shut off"

        if state != "running":
            await self._virsh_ok("start", definition.name)
        await self._virsh_ok("autostart", definition.name)
        return definition.name

    async def destroy_vm(self, name: str) -> bool:
        state = await self._domain_state(name)
        if state is None:
            return False
        if state in ("running", "paused", "in shutdown", "pmsuspended"):
            result = await self._virsh("destroy", name)
            if result.return_code != 0 and "not running" not in result.stderr.lower():
                raise ProvisionError(f"virsh destroy failed: {result.stderr}")
        result = await self._virsh("undefine", name)
        if result.return_code != 0 and not _is_missing(result.stderr):
            raise ProvisionError(f"virsh undefine failed: {result.stderr}")
        return True

    async def list_vms(self) -> List[VMInfo]:
        names_out = await self._virsh_ok("list", "--all", "--name")
        names = [n.strip() for n in names_out.splitlines() if n.strip()]

        async def _describe(name: str) -> VMInfo:
            state_out, iflist_out = await asyncio.gather(
                self._virsh_ok("domstate", name), self._virsh_ok("domiflist", name)
            )
            return VMInfo(
                name=name,
                running=state_out.strip().lower() == "running",
                macs=parse_domiflist(iflist_out),
            )

        return list(await asyncio.gather(*[_describe(n) for n in names]))

    async def list_leases(self, network: str) -> List[DhcpLease]:
        return parse_dhcp_leases(await self._virsh_ok("net-dhcp-leases", network))

    async def release_lease(self, network: str, mac: str) -> None:
        result = await self._virsh(
            "net-update",
            network,
            "delete",
            "ip-dhcp-host",
            f"<host mac='{escape(mac)}'/>",
            "--live",
            "--config",
        )
        if result.return_code != 0:
            # Dynamic leases have no host entry; they expire on their own.
            logger.debug("No DHCP host entry for %s on %s: %s", mac, network, result.stderr)
