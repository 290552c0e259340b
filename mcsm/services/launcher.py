import asyncio
import logging
import math
import os
import re
import shutil
import subprocess
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import psutil

from ..config import Settings, settings as default_settings
from ..errors import JavaNotInstalled, JavaWrongVersion, LaunchFailed

logger = logging.getLogger(__name__)
process_log = logging.getLogger("mcsm.process")

PID_FILE = ".pid"
STREAM_LIMIT = 1024 * 1024
JAVA_SEARCH_DEPTH = 4

# Aikar's G1GC flags:
# https://aikar.co/2018/07/02/tuning-the-jvm-g1gc-garbage-collector-flags-for-minecraft/
GC_BASELINE_FLAGS = [
    "-XX:+UseG1GC",
    "-XX:+ParallelRefProcEnabled",
    "-XX:MaxGCPauseMillis=200",
    "-XX:+UnlockExperimentalVMOptions",
    "-XX:+DisableExplicitGC",
    "-XX:-OmitStackTraceInFastThrow",
    "-XX:+AlwaysPreTouch",
    "-XX:G1NewSizePercent=30",
    "-XX:G1MaxNewSizePercent=40",
    "-XX:G1HeapRegionSize=8M",
    "-XX:G1ReservePercent=20",
    "-XX:G1HeapWastePercent=5",
    "-XX:G1MixedGCCountTarget=8",
    "-XX:InitiatingHeapOccupancyPercent=15",
    "-XX:G1MixedGCLiveThresholdPercent=90",
    "-XX:G1RSetUpdatingPauseTimePercent=5",
    "-XX:SurvivorRatio=32",
    "-XX:MaxTenuringThreshold=1",
    "-Dusing.aikars.flags=true",
    "-Daikars.new.flags=true",
]

LARGE_HEAP_GB = 12
LARGE_HEAP_OVERRIDES = {
    "-XX:G1NewSizePercent=30": "-XX:G1NewSizePercent=40",
    "-XX:G1MaxNewSizePercent=40": "-XX:G1MaxNewSizePercent=50",
    "-XX:G1HeapRegionSize=8M": "-XX:G1HeapRegionSize=16M",
    "-XX:G1ReservePercent=20": "-XX:G1ReservePercent=15",
    "-XX:InitiatingHeapOccupancyPercent=15": "-XX:InitiatingHeapOccupancyPercent=20",
}

GC_LOGGING_FLAGS = [
    "-Xloggc:gc.log",
    "-verbose:gc",
    "-XX:+PrintGCDetails",
    "-XX:+PrintGCDateStamps",
    "-XX:+PrintGCTimeStamps",
    "-XX:+UseGCLogFileRotation",
    "-XX:NumberOfGCLogFiles=5",
    "-XX:GCLogFileSize=1M",
]

MIN_TUNED_JAVA = 8
MAX_TUNED_JAVA = 10

_VERSION_RE = re.compile(r'version "(\d+)(?:\.(\d+))?')


def parse_java_major(output: str) -> Optional[int]:
    match = _VERSION_RE.search(output)
    if not match:
        return None
    major = int(match.group(1))
    # Pre-9 runtimes report themselves as 1.x
    if major == 1 and match.group(2):
        major = int(match.group(2))
    return major


def dedicated_memory_gb(free_memory_bytes: int, memory_split: int) -> int:
    free_gb = free_memory_bytes / 1e9
    return max(1, math.floor(free_gb / memory_split + 0.5))


def build_tuning_flags(java_version: int, dedicated_gb: int, help_url: str) -> list[str]:
    if java_version < MIN_TUNED_JAVA or java_version > MAX_TUNED_JAVA:
        raise JavaWrongVersion(
            f"Tuning flags are not verified for Java {java_version}; use Java 8 or disable tuning flags",
            help_url,
        )

    flags = [f"-Xms{dedicated_gb}G", f"-Xmx{dedicated_gb}G"]
    if dedicated_gb > LARGE_HEAP_GB:
        flags.extend(LARGE_HEAP_OVERRIDES.get(flag, flag) for flag in GC_BASELINE_FLAGS)
    else:
        flags.extend(GC_BASELINE_FLAGS)

    flags.extend(GC_LOGGING_FLAGS)
    if java_version == 8:
        flags.append("-XX:+UseLargePagesInMetaspace")
    return flags


def write_pid_file(directory: str, pid: int) -> None:
    with open(os.path.join(directory, PID_FILE), "w", encoding="utf-8") as handle:
        handle.write(str(pid))


def read_pid_file(directory: str) -> Optional[int]:
    try:
        with open(os.path.join(directory, PID_FILE), "r", encoding="utf-8") as handle:
            return int(handle.read().strip())
    except (OSError, ValueError):
        return None


@dataclass
class LaunchedProcess:
    process: asyncio.subprocess.Process
    pid: int
    directory: str
    output: deque
    pumps: list[asyncio.Task] = field(default_factory=list)
    exit_task: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


ExitCallback = Callable[[LaunchedProcess, int], Optional[Awaitable[None]]]


class ProcessLauncher:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        free_memory: Optional[Callable[[], int]] = None,
    ) -> None:
        self.settings = settings or default_settings
        self._free_memory = free_memory or (lambda: psutil.virtual_memory().available)

    async def resolve_java(self) -> tuple[str, int]:
        help_url = self.settings.java_download_url
        required = self.settings.java_version
        java_bin = self._find_java_binary()
        if not java_bin:
            raise JavaNotInstalled("No Java installation found; please install Java", help_url)

        version = await self.java_version(java_bin)
        if version != required:
            raise JavaWrongVersion(
                f"Wrong Java version ({version}) at {java_bin}; please install Java {required}",
                help_url,
            )
        return java_bin, version

    async def java_version(self, java_bin: str) -> Optional[int]:
        try:
            proc = await asyncio.create_subprocess_exec(
                java_bin,
                "-version",
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
            output, _ = await proc.communicate()
        except OSError as exc:
            raise JavaNotInstalled(
                f"Unable to run {java_bin}: {exc}", self.settings.java_download_url
            ) from exc
        if proc.returncode != 0:
            raise JavaNotInstalled(
                f"{java_bin} -version exited with code {proc.returncode}",
                self.settings.java_download_url,
            )
        return parse_java_major(output.decode("utf-8", errors="replace"))

    def tuning_flags(self, java_version: int) -> list[str]:
        dedicated = dedicated_memory_gb(self._free_memory(), self.settings.memory_split)
        return build_tuning_flags(java_version, dedicated, self.settings.java_download_url)

    async def build_command(self, binary_file: str, use_tuning_flags: bool) -> list[str]:
        java_bin, version = await self.resolve_java()
        args = ["-jar", binary_file, "nogui"]
        if use_tuning_flags:
            return [java_bin, *self.tuning_flags(version), *args]
        return [java_bin, *args]

    async def launch(
        self,
        directory: str,
        binary_file: str,
        wait: bool = False,
        use_tuning_flags: Optional[bool] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> LaunchedProcess:
        logger.info("Running jar file %s in %s", binary_file, directory)
        if use_tuning_flags is None:
            use_tuning_flags = self.settings.use_tuning_flags
        command = await self.build_command(binary_file, use_tuning_flags)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=directory,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise LaunchFailed(f"Failed to start {binary_file}: {exc}") from exc

        launched = LaunchedProcess(
            process=process,
            pid=process.pid,
            directory=directory,
            output=deque(maxlen=self.settings.console_buffer_lines),
        )
        try:
            await asyncio.to_thread(write_pid_file, directory, process.pid)
        except OSError as exc:
            logger.warning("Failed to write pid file for [%s]: %s", process.pid, exc)

        launched.pumps = [
            asyncio.create_task(self._pump(process.stdout, launched, "stdout", logging.INFO)),
            asyncio.create_task(self._pump(process.stderr, launched, "stderr", logging.ERROR)),
        ]

        if wait:
            exit_code = await self._wait_for_exit(launched)
            if exit_code != 0:
                raise LaunchFailed(f"Child process [{launched.pid}] exited with code {exit_code}")
            return launched

        launched.exit_task = asyncio.create_task(self._watch(launched, on_exit))
        return launched

    async def _wait_for_exit(self, launched: LaunchedProcess) -> int:
        exit_code = await launched.process.wait()
        await asyncio.gather(*launched.pumps, return_exceptions=True)
        msg = "Child process [%s] exited with code %s"
        if exit_code != 0:
            logger.warning(msg, launched.pid, exit_code)
        else:
            logger.info(msg, launched.pid, exit_code)
        return exit_code

    async def _watch(self, launched: LaunchedProcess, on_exit: Optional[ExitCallback]) -> None:
        exit_code = await self._wait_for_exit(launched)
        if on_exit is None:
            return
        result = on_exit(launched, exit_code)
        if asyncio.iscoroutine(result):
            await result

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        launched: LaunchedProcess,
        label: str,
        level: int,
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # over-long line; the reader has already discarded it
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            launched.output.append(text)
            process_log.log(level, "[%s] %s: %s", launched.pid, label, text)

    def _find_java_binary(self) -> Optional[str]:
        if self.settings.java_path:
            return self.settings.java_path

        root = self.settings.java_install_root
        marker = f"-{self.settings.java_version}-"
        if root and os.path.isdir(root):
            for name in sorted(os.listdir(root)):
                if marker not in name:
                    continue
                found = _walk_for_java(os.path.join(root, name))
                if found:
                    return found
        return shutil.which("java")


def _walk_for_java(base: str) -> Optional[str]:
    base_depth = base.rstrip(os.sep).count(os.sep)
    for dirpath, dirnames, filenames in os.walk(base):
        if dirpath.count(os.sep) - base_depth >= JAVA_SEARCH_DEPTH:
            dirnames[:] = []
        if "java" in filenames and os.path.basename(dirpath) == "bin":
            candidate = os.path.join(dirpath, "java")
            if os.access(candidate, os.X_OK):
                return candidate
    return None
