"""Default scan collaborators - lightweight local security probes.

Each probe is an async callable ``probe(previous, deep=False) -> dict`` where
``previous`` holds the sections produced earlier in the same scan. A probe may
raise; the task runner turns that into a failed scan. Blocking work (file
reads, directory walks) runs in the default executor, subprocesses use
``asyncio.create_subprocess_exec``.
"""
import asyncio
import logging
import os
import platform
import re
import shutil
import socket
import stat
import sys
import tempfile
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

COMMON_PORTS = {
    21: "ftp", 22: "ssh", 23: "telnet", 25: "smtp", 53: "dns", 80: "http",
    139: "netbios", 443: "https", 445: "smb", 3306: "mysql", 3389: "rdp",
    5432: "postgresql", 5900: "vnc", 8080: "http-alt",
}

EXTENDED_PORTS = {
    **COMMON_PORTS,
    110: "pop3", 111: "rpcbind", 135: "msrpc", 143: "imap", 161: "snmp",
    389: "ldap", 1433: "mssql", 1521: "oracle", 2049: "nfs", 5985: "winrm",
    6379: "redis", 8443: "https-alt", 9200: "elasticsearch", 11211: "memcached",
    27017: "mongodb",
}

# Services that send credentials in clear text or are common attack targets
INSECURE_SERVICES = {
    21: ("high", "FTP service exposed"),
    23: ("critical", "Telnet service exposed"),
    139: ("medium", "NetBIOS service exposed"),
    445: ("medium", "SMB service exposed"),
    3389: ("medium", "RDP service exposed"),
    5900: ("high", "VNC service exposed"),
    6379: ("high", "Redis service exposed"),
    11211: ("high", "Memcached service exposed"),
    27017: ("high", "MongoDB service exposed"),
}

PROBE_TIMEOUT = 1.0
COMMAND_TIMEOUT = 15
MAX_DEVICES = 16
MAX_SUSPICIOUS_FILES = 50


def finding(severity: str, title: str, detail: str = "") -> dict:
    return {"severity": severity, "title": title, "detail": detail}


async def _in_executor(func, *args):
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, func, *args)


async def _run_command(*argv: str) -> Optional[Tuple[int, str]]:
    """Run a command, returning (returncode, stdout) or None if it is not installed."""
    if shutil.which(argv[0]) is None:
        return None
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=COMMAND_TIMEOUT)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode, stdout.decode(errors="replace")


async def _port_open(host: str, port: int) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=PROBE_TIMEOUT)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def _probe_ports(host: str, ports: dict) -> List[dict]:
    port_list = sorted(ports)
    results = await asyncio.gather(*[_port_open(host, p) for p in port_list])
    return [
        {"host": host, "port": port, "service": ports[port]}
        for port, is_open in zip(port_list, results)
        if is_open
    ]


def _system_facts() -> dict:
    return {
        "hostname": socket.gethostname(),
        "os": platform.system(),
        "release": platform.release(),
        "version": platform.version(),
        "arch": platform.machine(),
        "python": platform.python_version(),
        "cpuCount": os.cpu_count(),
    }


def _disk_usage() -> dict:
    root = os.path.abspath(os.sep)
    usage = shutil.disk_usage(root)
    return {
        "path": root,
        "totalBytes": usage.total,
        "usedBytes": usage.used,
        "freeBytes": usage.free,
        "percentUsed": round(usage.used / usage.total * 100, 1) if usage.total else 0,
    }


def _read_sshd_config(path: str = "/etc/ssh/sshd_config") -> Optional[dict]:
    if not os.path.isfile(path):
        return None
    options = {}
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split(None, 1)
            if len(parts) == 2:
                options.setdefault(parts[0].lower(), parts[1].strip().lower())
    return options


def _check_file_permissions() -> List[dict]:
    findings = []
    checks = [
        ("/etc/passwd", stat.S_IWOTH, "critical", "World-writable /etc/passwd"),
        ("/etc/shadow", stat.S_IROTH, "critical", "World-readable /etc/shadow"),
        ("/etc/sudoers", stat.S_IWOTH, "critical", "World-writable /etc/sudoers"),
    ]
    for path, mask, severity, title in checks:
        try:
            mode = os.stat(path).st_mode
        except OSError:
            continue
        if mode & mask:
            findings.append(finding(severity, title, f"{path} mode {oct(mode & 0o777)}"))
    return findings


def _temp_directories() -> List[str]:
    candidates = [tempfile.gettempdir(), "/dev/shm", "/var/tmp"]
    seen = []
    for path in candidates:
        if os.path.isdir(path) and path not in seen:
            seen.append(path)
    return seen


def _find_temp_executables(deep: bool) -> List[str]:
    """Executable regular files in temp directories (top level unless deep)."""
    found = []
    for root_dir in _temp_directories():
        for dirpath, dirnames, filenames in os.walk(root_dir):
            for name in filenames:
                path = os.path.join(dirpath, name)
                try:
                    st = os.lstat(path)
                except OSError:
                    continue
                if stat.S_ISREG(st.st_mode) and st.st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
                    found.append(path)
                    if len(found) >= MAX_SUSPICIOUS_FILES:
                        return found
            if not deep:
                dirnames.clear()
    return found


def _read_arp_table() -> Optional[List[dict]]:
    path = "/proc/net/arp"
    if not os.path.isfile(path):
        return None
    devices = []
    with open(path, encoding="utf-8") as f:
        next(f, None)  # header
        for line in f:
            parts = line.split()
            if len(parts) >= 6 and parts[3] != "00:00:00:00:00:00":
                devices.append({"ip": parts[0], "mac": parts[3], "interface": parts[5]})
    return devices


_ARP_LINE = re.compile(r"\(?(\d+\.\d+\.\d+\.\d+)\)?\s+(?:at\s+)?([0-9a-fA-F]{1,2}(?:[:-][0-9a-fA-F]{1,2}){5})")


class LocalScanSuite:
    """Probes run by the task runner; every method matches the probe signature."""

    async def basic_system_info(self, previous: dict, deep: bool = False) -> dict:
        return await _in_executor(_system_facts)

    async def detailed_system_info(self, previous: dict, deep: bool = False) -> dict:
        info = await _in_executor(_system_facts)
        info["disk"] = await _in_executor(_disk_usage)
        if hasattr(os, "getloadavg"):
            info["loadAverage"] = list(os.getloadavg())
        if deep and hasattr(socket, "if_nameindex"):
            info["interfaces"] = [name for _, name in socket.if_nameindex()]
        return info

    async def check_configuration(self, previous: dict, deep: bool = False) -> dict:
        findings = await _in_executor(_check_file_permissions)
        sshd = await _in_executor(_read_sshd_config)
        if sshd is not None:
            if sshd.get("permitrootlogin") == "yes":
                findings.append(finding("high", "SSH root login permitted", "PermitRootLogin yes"))
            if sshd.get("passwordauthentication") == "yes":
                findings.append(finding("medium", "SSH password authentication enabled"))
            if sshd.get("permitemptypasswords") == "yes":
                findings.append(finding("critical", "SSH permits empty passwords"))
        disk = previous.get("system", {}).get("disk")
        if disk and disk.get("percentUsed", 0) >= 95:
            findings.append(finding("medium", "Disk almost full", f"{disk['percentUsed']}% used"))
        return {"sshdConfigured": sshd is not None, "findings": findings}

    async def scan_local_vulnerabilities(self, previous: dict, deep: bool = False) -> dict:
        listening = await _probe_ports("127.0.0.1", {p: COMMON_PORTS.get(p, "unknown") for p in INSECURE_SERVICES})
        findings = [
            finding(*INSECURE_SERVICES[entry["port"]], f"port {entry['port']} listening locally")
            for entry in listening
        ]
        if sys.version_info < (3, 9):
            findings.append(finding("low", "Outdated Python runtime", platform.python_version()))
        return {"listening": listening, "findings": findings}

    async def malware_scan(self, previous: dict, deep: bool = False) -> dict:
        suspicious = await _in_executor(_find_temp_executables, deep)
        findings = [finding("medium", "Executable file in temporary directory", path) for path in suspicious]
        return {"scannedDirectories": _temp_directories(), "suspiciousFiles": suspicious, "findings": findings}

    async def quick_port_scan(self, previous: dict, deep: bool = False) -> dict:
        open_ports = await _probe_ports("127.0.0.1", COMMON_PORTS)
        return {"host": "127.0.0.1", "openPorts": open_ports}

    async def discover_devices(self, previous: dict, deep: bool = False) -> dict:
        devices = await _in_executor(_read_arp_table)
        if devices is None:
            output = await _run_command("arp", "-a")
            devices = []
            if output is not None:
                for match in _ARP_LINE.finditer(output[1]):
                    devices.append({"ip": match.group(1), "mac": match.group(2).replace("-", ":").lower()})
        return {"devices": devices, "count": len(devices)}

    async def scan_services(self, previous: dict, deep: bool = False) -> dict:
        ports = EXTENDED_PORTS if deep else COMMON_PORTS
        hosts = ["127.0.0.1"]
        if deep:
            hosts += [d["ip"] for d in previous.get("devices", {}).get("devices", [])[:MAX_DEVICES]]
        services = []
        for host in hosts:
            services.extend(await _probe_ports(host, ports))
        return {"hosts": hosts, "services": services}

    async def check_firewall(self, previous: dict, deep: bool = False) -> dict:
        system = platform.system()
        if system == "Windows":
            output = await _run_command("netsh", "advfirewall", "show", "allprofiles", "state")
            enabled = None if output is None else "ON" in output[1].upper()
            tool = "netsh"
        elif system == "Darwin":
            output = await _run_command("/usr/libexec/ApplicationFirewall/socketfilterfw", "--getglobalstate")
            enabled = None if output is None else "enabled" in output[1].lower()
            tool = "socketfilterfw"
        else:
            output = await _run_command("ufw", "status")
            tool = "ufw"
            if output is not None and output[0] == 0:
                enabled = "status: active" in output[1].lower()
            else:
                output = await _run_command("nft", "list", "ruleset")
                tool = "nft"
                enabled = None if output is None or output[0] != 0 else bool(output[1].strip())

        findings = []
        if enabled is False:
            findings.append(finding("high", "Host firewall disabled", tool))
        return {"tool": tool, "enabled": enabled, "findings": findings}

    async def scan_network_vulnerabilities(self, previous: dict, deep: bool = False) -> dict:
        services = previous.get("services", {}).get("services", [])
        findings = []
        for entry in services:
            if entry["port"] in INSECURE_SERVICES:
                severity, title = INSECURE_SERVICES[entry["port"]]
                findings.append(finding(severity, title, f"{entry['host']}:{entry['port']}"))
        return {"checkedServices": len(services), "findings": findings}
