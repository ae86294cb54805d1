############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# gpu_sources.py: Platform-specific local GPU capability sources
#
############################################################

"""Local GPU capability sources.

Each source asks one vendor tool (or the PCI bus) about the GPUs on this
machine and returns a list of ``GpuReading``. ``LocalGpuDetector`` runs the
sources for the current platform and applies the capacity policy:

- an exact vendor-tool VRAM figure always beats a heuristic one
- a discrete card seen on the bus without a usable driver counts as 2 GB
- integrated GPUs (Intel, AMD APUs) never count
"""

import asyncio
import json
import platform
import re
import shutil
from typing import Iterable, List, Optional, Sequence

from fleetrouter.core.telemetry.models import GpuReading, GpuVendor
from fleetrouter.logging_config import get_logger

logger = get_logger(__name__)

GIB = 1024 ** 3

# Discrete card visible but memory unknown
HEURISTIC_VRAM_GB = 2.0

# AMD APU codenames reported by lspci for integrated graphics
AMD_APU_CODENAMES = ("cezanne", "renoir", "barcelo", "phoenix", "rembrandt", "raphael")

# Apple Silicon shares RAM with the GPU; ~75% is usable for a model
APPLE_UNIFIED_MIN_GB = 16
APPLE_UNIFIED_FRACTION = 0.75

# Win32_VideoController.AdapterRAM is a uint32 and saturates at 4 GB
WMI_ADAPTER_RAM_CAP = 4 * GIB - 1


def vendor_from_name(name: Optional[str]) -> Optional[GpuVendor]:
    """Guess the vendor from a marketing name. None means integrated Intel."""
    if not name:
        return GpuVendor.UNKNOWN
    lowered = name.lower()
    if re.search(r"nvidia|geforce|gtx|rtx|quadro|tesla", lowered):
        return GpuVendor.NVIDIA
    if re.search(r"\bamd\b|radeon|\brx\b|\bati\b", lowered):
        return GpuVendor.AMD
    if re.search(r"apple|\bm[1-9]\b", lowered):
        return GpuVendor.APPLE
    if "intel" in lowered:
        return None
    return GpuVendor.UNKNOWN


async def run_tool(args: Sequence[str], timeout: float) -> Optional[str]:
    """Run a vendor tool and return its stdout, or None if unusable."""
    if shutil.which(args[0]) is None:
        return None

    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("gpu_tool_timeout", tool=args[0], timeout=timeout)
        return None
    finally:
        # Also reached when an outer timeout cancels us
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    if proc.returncode != 0:
        logger.debug("gpu_tool_failed", tool=args[0], returncode=proc.returncode)
        return None
    return stdout.decode(errors="replace")


class CapabilitySource:
    """Base class for a local GPU capability source."""

    name = "base"

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def read(self) -> List[GpuReading]:
        raise NotImplementedError


class NvmlSource(CapabilitySource):
    """NVIDIA GPUs through the NVIDIA Management Library."""

    name = "nvml"

    async def read(self) -> List[GpuReading]:
        return await asyncio.to_thread(self._read_sync)

    def _read_sync(self) -> List[GpuReading]:
        try:
            import pynvml
            pynvml.nvmlInit()
        except Exception as e:
            logger.debug("nvml_unavailable", error=str(e))
            return []

        readings = []
        try:
            for index in range(pynvml.nvmlDeviceGetCount()):
                handle = pynvml.nvmlDeviceGetHandleByIndex(index)
                name = pynvml.nvmlDeviceGetName(handle)
                if isinstance(name, bytes):
                    name = name.decode()
                mem = pynvml.nvmlDeviceGetMemoryInfo(handle)
                readings.append(
                    GpuReading(
                        vendor=GpuVendor.NVIDIA,
                        vram_gb=round(mem.total / GIB, 2),
                        name=name,
                        source=self.name,
                        exact=True,
                        vram_used_gb=round(mem.used / GIB, 2),
                    )
                )
        finally:
            try:
                pynvml.nvmlShutdown()
            except Exception:
                pass
        return readings


class NvidiaSmiSource(CapabilitySource):
    """NVIDIA GPUs through the nvidia-smi CLI."""

    name = "nvidia-smi"

    async def read(self) -> List[GpuReading]:
        output = await run_tool(
            [
                "nvidia-smi",
                "--query-gpu=name,memory.total,memory.used",
                "--format=csv,noheader,nounits",
            ],
            self.timeout,
        )
        if not output:
            return []
        return self.parse(output)

    def parse(self, output: str) -> List[GpuReading]:
        readings = []
        for line in output.splitlines():
            parts = [p.strip() for p in line.split(",")]
            if len(parts) < 2:
                continue
            try:
                total_mib = float(parts[1])
            except ValueError:
                continue
            if total_mib <= 0:
                continue
            used_gb = None
            if len(parts) > 2:
                try:
                    used_gb = round(float(parts[2]) / 1024, 2)
                except ValueError:
                    pass
            readings.append(
                GpuReading(
                    vendor=GpuVendor.NVIDIA,
                    vram_gb=round(total_mib / 1024, 2),
                    name=parts[0],
                    source=self.name,
                    exact=True,
                    vram_used_gb=used_gb,
                )
            )
        return readings


class RocmSmiSource(CapabilitySource):
    """AMD GPUs through rocm-smi."""

    name = "rocm-smi"

    async def read(self) -> List[GpuReading]:
        output = await run_tool(
            ["rocm-smi", "--showmeminfo", "vram", "--json"], self.timeout
        )
        if not output:
            return []
        product = await run_tool(["rocm-smi", "--showproductname"], self.timeout)
        return self.parse(output, product or "")

    def parse(self, output: str, product: str = "") -> List[GpuReading]:
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            logger.debug("rocm_smi_bad_json")
            return []

        card_name = "AMD GPU"
        match = re.search(r"Card Series:\s*(.+)", product)
        if match:
            card_name = match.group(1).strip()

        readings = []
        for card in sorted(data):
            fields = data[card]
            if not isinstance(fields, dict):
                continue
            total = used = None
            for key, value in fields.items():
                if "Total" not in key or "Memory (B)" not in key:
                    continue
                try:
                    number = int(value)
                except (TypeError, ValueError):
                    continue
                if "Used" in key:
                    used = number
                else:
                    total = number
            if not total:
                continue
            readings.append(
                GpuReading(
                    vendor=GpuVendor.AMD,
                    vram_gb=round(total / GIB, 2),
                    name=card_name,
                    source=self.name,
                    exact=True,
                    vram_used_gb=round(used / GIB, 2) if used is not None else None,
                )
            )
        return readings


class LspciSource(CapabilitySource):
    """Bus enumeration heuristic for cards whose driver tools are missing."""

    name = "lspci"

    async def read(self) -> List[GpuReading]:
        output = await run_tool(["lspci"], self.timeout)
        if not output:
            return []
        return self.parse(output)

    def parse(self, output: str) -> List[GpuReading]:
        readings = []
        for line in output.splitlines():
            lowered = line.lower()
            if not re.search(r"vga|3d|display", lowered):
                continue
            card_name = line.split(": ", 1)[-1].strip()
            if "nvidia" in lowered:
                vendor = GpuVendor.NVIDIA
            elif re.search(r"amd|radeon|\bati\b", lowered):
                if any(codename in lowered for codename in AMD_APU_CODENAMES):
                    logger.debug("gpu_skipped_integrated", name=card_name)
                    continue
                vendor = GpuVendor.AMD
            else:
                # Intel and anything unidentified is integrated
                logger.debug("gpu_skipped_integrated", name=card_name)
                continue
            readings.append(
                GpuReading(
                    vendor=vendor,
                    vram_gb=HEURISTIC_VRAM_GB,
                    name=card_name,
                    source=self.name,
                    exact=False,
                )
            )
        return readings


class MacSystemProfilerSource(CapabilitySource):
    """macOS GPUs through system_profiler, plus Apple Silicon unified memory."""

    name = "system_profiler"

    async def read(self) -> List[GpuReading]:
        output = await run_tool(["system_profiler", "SPDisplaysDataType"], self.timeout)
        memsize = await run_tool(["sysctl", "-n", "hw.memsize"], self.timeout)
        total_mem_bytes = None
        if memsize:
            try:
                total_mem_bytes = int(memsize.strip())
            except ValueError:
                total_mem_bytes = None
        return self.parse(output or "", total_mem_bytes)

    def parse(self, output: str, total_mem_bytes: Optional[int] = None) -> List[GpuReading]:
        readings = []
        current_name = None
        for line in output.splitlines():
            if "Chipset Model:" in line:
                current_name = line.split("Chipset Model:", 1)[1].strip()
                continue
            if "VRAM" not in line:
                continue
            match = re.search(r"(\d+)\s*(GB|MB)", line)
            if not match:
                continue
            amount = int(match.group(1))
            vram_gb = float(amount) if match.group(2) == "GB" else round(amount / 1024, 2)
            vendor = vendor_from_name(current_name)
            if vendor is None:
                logger.debug("gpu_skipped_integrated", name=current_name)
                continue
            readings.append(
                GpuReading(
                    vendor=vendor,
                    vram_gb=vram_gb,
                    name=current_name,
                    source=self.name,
                    exact=True,
                )
            )

        best = max((r.vram_gb for r in readings), default=0.0)
        apple_or_none = not readings or any(r.vendor == GpuVendor.APPLE for r in readings)
        if total_mem_bytes and apple_or_none:
            total_gb = total_mem_bytes // GIB
            if total_gb >= APPLE_UNIFIED_MIN_GB:
                usable = float(int(total_gb * APPLE_UNIFIED_FRACTION))
                if usable > best:
                    readings.append(
                        GpuReading(
                            vendor=GpuVendor.APPLE,
                            vram_gb=usable,
                            name=current_name or "Apple Silicon",
                            source="sysctl",
                            exact=False,
                        )
                    )
        return readings


class WindowsWmiSource(CapabilitySource):
    """Windows GPUs through WMI Win32_VideoController."""

    name = "wmi"

    async def read(self) -> List[GpuReading]:
        output = await run_tool(
            [
                "powershell",
                "-NoProfile",
                "-Command",
                "Get-CimInstance Win32_VideoController | "
                "Select-Object Name,AdapterRAM | ConvertTo-Json",
            ],
            self.timeout,
        )
        if not output:
            return []
        return self.parse(output)

    def parse(self, output: str) -> List[GpuReading]:
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            logger.debug("wmi_bad_json")
            return []
        if isinstance(data, dict):
            data = [data]

        readings = []
        for controller in data:
            name = controller.get("Name")
            vendor = vendor_from_name(name)
            if vendor is None or vendor == GpuVendor.UNKNOWN:
                logger.debug("gpu_skipped_integrated", name=name)
                continue
            adapter_ram = controller.get("AdapterRAM") or 0
            if adapter_ram <= 0:
                readings.append(
                    GpuReading(vendor=vendor, vram_gb=HEURISTIC_VRAM_GB, name=name,
                               source=self.name, exact=False)
                )
                continue
            readings.append(
                GpuReading(
                    vendor=vendor,
                    vram_gb=round(adapter_ram / GIB, 2),
                    name=name,
                    source=self.name,
                    exact=adapter_ram < WMI_ADAPTER_RAM_CAP,
                )
            )
        return readings


def default_sources(system: Optional[str] = None, timeout: float = 10.0) -> List[CapabilitySource]:
    """Capability sources for the given platform (defaults to this one)."""
    system = system or platform.system()
    if system == "Darwin":
        return [MacSystemProfilerSource(timeout)]
    if system == "Windows":
        return [NvmlSource(timeout), NvidiaSmiSource(timeout), WindowsWmiSource(timeout)]
    return [
        NvmlSource(timeout),
        NvidiaSmiSource(timeout),
        RocmSmiSource(timeout),
        LspciSource(timeout),
    ]


def pick_best(readings: Iterable[GpuReading]) -> GpuReading:
    """Apply the capacity policy to a set of readings."""
    usable = [r for r in readings if r.counts_for_capacity]
    exact = [r for r in usable if r.exact]
    pool = exact or usable
    if not pool:
        return GpuReading()
    return max(pool, key=lambda r: r.vram_gb)


class LocalGpuDetector:
    """Detects the best local GPU using the platform's capability sources."""

    def __init__(self, sources: Optional[List[CapabilitySource]] = None, timeout: float = 10.0):
        self.sources = sources if sources is not None else default_sources(timeout=timeout)

    async def detect(self) -> GpuReading:
        readings: List[GpuReading] = []
        for source in self.sources:
            try:
                found = await source.read()
            except Exception as e:
                logger.warning("gpu_source_error", source=source.name, error=str(e))
                continue
            for reading in found:
                logger.debug(
                    "gpu_found",
                    source=source.name,
                    vendor=reading.vendor.value,
                    name=reading.name,
                    vram_gb=reading.vram_gb,
                    exact=reading.exact,
                )
            readings.extend(found)

        best = pick_best(readings)
        logger.info(
            "local_gpu_detected",
            vendor=best.vendor.value,
            name=best.name,
            vram_gb=best.vram_gb,
            source=best.source,
        )
        return best


def detect_compile_worker() -> bool:
    """True when an icecream daemon is installed on this machine."""
    return shutil.which("iceccd") is not None or shutil.which("icecc") is not None
