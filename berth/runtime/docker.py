"""Docker runtime implementation using aiodocker.

Supports:
- Running Berth inside a container with mounted docker.sock
- Running Berth on host with direct docker.sock access

File I/O goes through the archive endpoints (put_archive/get_archive);
everything else is a non-interactive exec inside the user's container.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import posixpath
import re
import tarfile
import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import aiodocker
import structlog
from aiodocker.exceptions import DockerError

from berth.config import get_settings
from berth.errors import (
    BerthError,
    CommandTimeoutError,
    ContainerProvisionError,
    ContainerUnavailableError,
    PathNotFoundError,
    ValidationError,
    best_effort,
)
from berth.runtime.base import (
    ContainerRecord,
    ContainerRuntime,
    ContainerStatus,
    ExecutionResult,
    ManifestEntry,
    ShellChannel,
    parse_manifest,
)
from berth.runtime.registry import ContainerRegistry

if TYPE_CHECKING:
    from aiodocker.containers import DockerContainer
    from aiodocker.stream import Stream

    from berth.config import DockerConfig

logger = structlog.get_logger()

MANAGED_LABEL = "berth.managed"
USER_LABEL = "berth.user_id"

MANIFEST_FORMAT = "%P|%y|%T@\\n"

DEFAULT_DOCKERFILE = """\
FROM {base_image}
RUN apt-get update \\
    && apt-get install -y --no-install-recommends \\
        bash ca-certificates curl git iproute2 net-tools procps python3 python3-pip \\
    && rm -rf /var/lib/apt/lists/*
RUN mkdir -p {workdir}
WORKDIR {workdir}
CMD ["sleep", "infinity"]
"""

_NAME_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_.-]")


def _parse_memory(memory_str: str) -> int:
    """Parse memory string (e.g., '1g', '512m') to bytes."""
    memory_str = memory_str.lower().strip()
    multipliers = {
        "k": 1024,
        "m": 1024 * 1024,
        "g": 1024 * 1024 * 1024,
    }
    if memory_str[-1] in multipliers:
        return int(float(memory_str[:-1]) * multipliers[memory_str[-1]])
    return int(memory_str)


def container_name(user_id: str, prefix: str = "user-") -> str:
    """Deterministic container name for a user.

    Ids that are not valid Docker names get a hash suffix so two different
    ids never share a name.
    """
    safe = _NAME_UNSAFE_RE.sub("-", user_id)
    if safe != user_id or not safe:
        digest = hashlib.sha1(user_id.encode()).hexdigest()[:8]
        safe = f"{safe}-{digest}" if safe else digest
    return f"{prefix}{safe}"


def make_tar(files: dict[str, bytes], *, compress: bool = False) -> bytes:
    """Build an in-memory tar archive (PAX format keeps sub-second mtimes)."""
    buf = io.BytesIO()
    mode = "w:gz" if compress else "w"
    now = time.time()
    with tarfile.open(fileobj=buf, mode=mode, format=tarfile.PAX_FORMAT) as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            info.mtime = now
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class DockerShellChannel(ShellChannel):
    """ShellChannel backed by an attached exec stream."""

    def __init__(self, stream: "Stream") -> None:
        self._stream = stream
        self._closed = False

    async def read(self) -> bytes | None:
        if self._closed:
            return None
        message = await self._stream.read_out()
        if message is None:
            return None
        return message.data

    async def write(self, data: bytes) -> None:
        await self._stream.write_in(data)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._stream.close()


async def _iter_output(stream: "Stream") -> AsyncIterator[bytes]:
    async with stream:
        while True:
            message = await stream.read_out()
            if message is None:
                return
            yield message.data


class DockerRuntime(ContainerRuntime):
    """Container runtime backed by the Docker engine API."""

    def __init__(
        self,
        config: "DockerConfig | None" = None,
        *,
        registry: ContainerRegistry | None = None,
    ) -> None:
        config = config or get_settings().docker
        socket_url = config.socket
        if socket_url.startswith(("unix://", "tcp://", "http://", "https://")):
            self._socket = socket_url
        else:
            self._socket = f"unix://{socket_url}"

        self._config = config
        self._workdir = "/" + config.workdir.strip("/")
        self._registry = registry or ContainerRegistry()
        self._client: aiodocker.Docker | None = None
        self._build_lock = asyncio.Lock()
        self._log = logger.bind(runtime="docker")

    @property
    def registry(self) -> ContainerRegistry:
        return self._registry

    async def _get_client(self) -> aiodocker.Docker:
        """Get or create the aiodocker client."""
        if self._client is None:
            self._client = aiodocker.Docker(url=self._socket)
        return self._client

    async def close(self) -> None:
        """Close the docker client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    # Helpers

    def _resolve(self, path: str) -> str:
        """Absolute container path for a workdir-relative path."""
        target = posixpath.normpath(posixpath.join(self._workdir, path.lstrip("/")))
        if target != self._workdir and not target.startswith(self._workdir + "/"):
            raise ValidationError(f"Path escapes workspace: {path}", path=path)
        return target

    def _relative(self, target: str) -> str:
        rel = posixpath.relpath(target, self._workdir)
        return "" if rel == "." else rel

    def _unavailable(self, user_id: str, error: Exception) -> ContainerUnavailableError:
        return ContainerUnavailableError(
            f"Container operation failed: {error}",
            user_id=user_id,
        )

    async def _require_container(self, user_id: str) -> "DockerContainer":
        record = self._registry.get(user_id)
        if record is None or record.status != ContainerStatus.RUNNING or record.container_id is None:
            raise ContainerUnavailableError(
                f"No running container for user {user_id}",
                user_id=user_id,
            )
        client = await self._get_client()
        return client.containers.container(record.container_id)

    async def _exec(
        self,
        user_id: str,
        container: "DockerContainer",
        argv: list[str],
    ) -> ExecutionResult:
        timeout = self._config.command_timeout
        stdout: list[bytes] = []
        stderr: list[bytes] = []
        try:
            async with asyncio.timeout(timeout):
                exec_ = await container.exec(
                    cmd=argv,
                    stdout=True,
                    stderr=True,
                    tty=False,
                    workdir=self._workdir,
                )
                async with exec_.start(detach=False) as stream:
                    while True:
                        message = await stream.read_out()
                        if message is None:
                            break
                        (stdout if message.stream == 1 else stderr).append(message.data)
                info = await exec_.inspect()
        except TimeoutError:
            self._log.error("docker.exec.timeout", user_id=user_id, command=argv[0], timeout=timeout)
            raise CommandTimeoutError(f"Command timed out after {timeout}s: {argv[0]}", user_id=user_id)
        except DockerError as e:
            self._log.error("docker.exec.failed", user_id=user_id, command=argv[0], error=str(e))
            raise self._unavailable(user_id, e) from e

        exit_code = info.get("ExitCode")
        error = b"".join(stderr).decode("utf-8", errors="replace")
        return ExecutionResult(
            success=exit_code == 0,
            output=b"".join(stdout).decode("utf-8", errors="replace"),
            error=error or None,
            exit_code=exit_code,
        )

    async def _force_delete(self, ref: str) -> None:
        client = await self._get_client()
        try:
            await client.containers.container(ref).delete(force=True)
        except DockerError as e:
            if e.status != 404:
                raise
            self._log.warning("docker.destroy.not_found", ref=ref)

    async def _remove_stale(self, name: str) -> None:
        client = await self._get_client()
        try:
            stale = await client.containers.get(name)
        except DockerError as e:
            if e.status == 404:
                return
            raise
        self._log.warning("docker.remove_stale", name=name, container_id=stale.id)
        await stale.delete(force=True)

    def _container_config(self, user_id: str) -> dict[str, Any]:
        resources = self._config.resources
        ports = [f"{p}/tcp" for p in self._config.exposed_ports]

        host_config: dict[str, Any] = {
            "Memory": _parse_memory(resources.memory),
            "NanoCpus": int(resources.cpus * 1e9),
            "PidsLimit": resources.pids_limit,
            "PortBindings": {p: [{"HostPort": ""}] for p in ports},
        }
        if self._config.network:
            host_config["NetworkMode"] = self._config.network

        return {
            "Image": self._config.image,
            "Cmd": ["sleep", "infinity"],
            "WorkingDir": self._workdir,
            "Env": [
                f"BERTH_USER_ID={user_id}",
                f"BERTH_WORKSPACE={self._workdir}",
                "TERM=xterm-256color",
            ],
            "Labels": {MANAGED_LABEL: "true", USER_LABEL: user_id},
            "ExposedPorts": {p: {} for p in ports},
            "HostConfig": host_config,
        }

    # Lifecycle

    async def build_base_image(self) -> bool:
        """Build the shared base image unless the tag already exists."""
        async with self._build_lock:
            client = await self._get_client()
            image = self._config.image
            try:
                await client.images.inspect(image)
                self._log.info("docker.image.exists", image=image)
                return False
            except DockerError as e:
                if e.status != 404:
                    raise ContainerProvisionError(f"Cannot inspect image {image}: {e}") from e
            except Exception as e:
                raise ContainerProvisionError(f"Container engine unreachable: {e}") from e

            dockerfile = self._config.dockerfile or DEFAULT_DOCKERFILE.format(
                base_image=self._config.base_image,
                workdir=self._workdir,
            )
            context = make_tar({"Dockerfile": dockerfile.encode()}, compress=True)

            self._log.info("docker.image.build", image=image, base_image=self._config.base_image)
            try:
                output = await client.images.build(
                    fileobj=io.BytesIO(context),
                    encoding="gzip",
                    tag=image,
                    rm=True,
                )
            except DockerError as e:
                raise ContainerProvisionError(f"Base image build failed: {e}") from e

            errors = [line["error"] for line in output if isinstance(line, dict) and "error" in line]
            if errors:
                raise ContainerProvisionError(f"Base image build failed: {errors[-1]}", image=image)

            self._log.info("docker.image.built", image=image)
            return True

    async def create_user_container(self, user_id: str) -> ContainerRecord:
        name = container_name(user_id, self._config.container_prefix)

        async with self._registry.lock(user_id):
            previous = self._registry.pop(user_id)
            if previous is not None:
                self._log.warning("docker.create.replacing_live", user_id=user_id, name=name)
                await self._teardown(previous)

            record = ContainerRecord(user_id=user_id, name=name)
            self._log.info("docker.create", user_id=user_id, name=name, image=self._config.image)

            timeout = self._config.provision_timeout
            try:
                async with asyncio.timeout(timeout):
                    await self._remove_stale(name)
                    client = await self._get_client()
                    container = await client.containers.create(
                        config=self._container_config(user_id),
                        name=name,
                    )
                    record.container_id = container.id
                    await container.start()
            except TimeoutError:
                await self._discard(record)
                raise ContainerProvisionError(
                    f"Container provisioning timed out after {timeout}s",
                    user_id=user_id,
                )
            except Exception as e:
                await self._discard(record)
                self._log.error("docker.create.failed", user_id=user_id, error=str(e))
                raise ContainerProvisionError(
                    f"Container provisioning failed: {e}",
                    user_id=user_id,
                ) from e

            record.status = ContainerStatus.RUNNING
            self._registry.put(record)
            self._log.info("docker.started", user_id=user_id, container_id=record.container_id)
            return record

    async def _discard(self, record: ContainerRecord) -> None:
        """Remove whatever a failed provisioning left behind."""
        with best_effort("docker.discard", user_id=record.user_id, name=record.name):
            async with asyncio.timeout(self._config.provision_timeout):
                await self._force_delete(record.container_id or record.name)
        record.status = ContainerStatus.REMOVED

    async def _teardown(self, record: ContainerRecord) -> None:
        self._log.info("docker.destroy", user_id=record.user_id, container_id=record.container_id)
        record.status = ContainerStatus.STOPPED

        if record.shell is not None:
            with best_effort("docker.shell_close", user_id=record.user_id):
                await record.shell.close()
            record.shell = None

        with best_effort("docker.destroy", user_id=record.user_id, container_id=record.container_id):
            async with asyncio.timeout(self._config.provision_timeout):
                await self._force_delete(record.container_id or record.name)
        record.status = ContainerStatus.REMOVED

    async def stop_and_remove(self, user_id: str) -> None:
        async with self._registry.lock(user_id):
            record = self._registry.pop(user_id)
            if record is None:
                record = ContainerRecord(
                    user_id=user_id,
                    name=container_name(user_id, self._config.container_prefix),
                )
            await self._teardown(record)

    async def cleanup_orphans(self) -> int:
        """Remove every container carrying the managed label."""
        client = await self._get_client()
        try:
            containers = await client.containers.list(
                all=True,
                filters={"label": [f"{MANAGED_LABEL}=true"]},
            )
        except Exception as e:
            raise ContainerProvisionError(f"Container engine unreachable: {e}") from e

        removed = 0
        for container in containers:
            with best_effort("docker.orphan_remove", container_id=container.id):
                await container.delete(force=True)
                removed += 1

        self._log.info("docker.orphans_removed", count=removed, found=len(containers))
        return removed

    def get_record(self, user_id: str) -> ContainerRecord | None:
        return self._registry.get(user_id)

    async def is_healthy(self) -> bool:
        try:
            client = await self._get_client()
            await client.version()
            return True
        except Exception as e:
            self._log.warning("docker.health.failed", error=str(e))
            return False

    async def inspect(self, user_id: str) -> dict[str, Any] | None:
        record = self._registry.get(user_id)
        if record is None or record.container_id is None:
            return None
        client = await self._get_client()
        try:
            return await client.containers.container(record.container_id).show()
        except DockerError as e:
            if e.status == 404:
                return None
            raise self._unavailable(user_id, e) from e

    # Streams and commands

    async def get_shell_stream(self, user_id: str) -> ShellChannel | None:
        record = self._registry.get(user_id)
        if record is None or record.status != ContainerStatus.RUNNING:
            return None
        if record.shell is None:
            container = await self._require_container(user_id)
            try:
                exec_ = await container.exec(
                    cmd=list(self._config.shell),
                    stdout=True,
                    stderr=True,
                    stdin=True,
                    tty=True,
                    workdir=self._workdir,
                    environment={"TERM": "xterm-256color"},
                )
            except DockerError as e:
                raise self._unavailable(user_id, e) from e
            record.shell = DockerShellChannel(exec_.start(detach=False))
            self._log.info("docker.shell.attached", user_id=user_id)
        return record.shell

    async def execute_command(self, user_id: str, command: str) -> AsyncIterator[bytes] | None:
        record = self._registry.get(user_id)
        if record is None or record.status != ContainerStatus.RUNNING:
            return None
        container = await self._require_container(user_id)
        try:
            exec_ = await container.exec(
                cmd=["sh", "-c", command],
                stdout=True,
                stderr=True,
                tty=False,
                workdir=self._workdir,
            )
        except DockerError as e:
            raise self._unavailable(user_id, e) from e
        return _iter_output(exec_.start(detach=False))

    async def run_command(self, user_id: str, argv: list[str]) -> ExecutionResult:
        container = await self._require_container(user_id)
        return await self._exec(user_id, container, argv)

    # Filesystem

    async def _check(self, user_id: str, container: "DockerContainer", argv: list[str]) -> bool:
        result = await self._exec(user_id, container, argv)
        return result.success

    async def _mkdir(self, user_id: str, container: "DockerContainer", target: str) -> None:
        if target == self._workdir:
            return
        result = await self._exec(user_id, container, ["mkdir", "-p", "--", target])
        if not result.success:
            raise ValidationError(
                f"Cannot create directory {self._relative(target)}: {result.error}",
                path=self._relative(target),
            )

    async def write_file(self, user_id: str, path: str, content: str) -> None:
        container = await self._require_container(user_id)
        target = self._resolve(path)
        if target == self._workdir:
            raise ValidationError("Cannot write to the workspace root", path=path)

        parent, name = posixpath.split(target)
        await self._mkdir(user_id, container, parent)

        archive = make_tar({name: content.encode("utf-8")})
        try:
            async with asyncio.timeout(self._config.command_timeout):
                await container.put_archive(parent, archive)
        except TimeoutError:
            raise CommandTimeoutError(f"Write timed out: {path}", user_id=user_id, path=path)
        except DockerError as e:
            raise self._unavailable(user_id, e) from e

    async def read_file(self, user_id: str, path: str) -> str:
        container = await self._require_container(user_id)
        target = self._resolve(path)

        try:
            async with asyncio.timeout(self._config.command_timeout):
                archive = await container.get_archive(target)
        except TimeoutError:
            raise CommandTimeoutError(f"Read timed out: {path}", user_id=user_id, path=path)
        except DockerError as e:
            if e.status == 404:
                raise PathNotFoundError(f"File not found: {path}", path=path) from e
            raise self._unavailable(user_id, e) from e

        with archive:
            member = archive.next()
            if member is None or not member.isfile():
                raise PathNotFoundError(f"Not a file: {path}", path=path)
            handle = archive.extractfile(member)
            data = handle.read() if handle is not None else b""

        return data.decode("utf-8", errors="replace")

    def _find_argv(self, start: str, *, maxdepth: int | None = None) -> list[str]:
        argv = ["find", start, "-mindepth", "1"]
        if maxdepth is not None:
            argv += ["-maxdepth", str(maxdepth)]
        excludes = self._config.manifest_excludes
        if excludes:
            argv.append("(")
            for i, name in enumerate(excludes):
                if i:
                    argv.append("-o")
                argv += ["-name", name]
            argv += [")", "-prune", "-o"]
        argv += ["-printf", MANIFEST_FORMAT]
        return argv

    async def list_files(self, user_id: str) -> list[ManifestEntry]:
        container = await self._require_container(user_id)
        result = await self._exec(user_id, container, self._find_argv(self._workdir))
        if not result.success and not result.output:
            raise self._unavailable(user_id, BerthError(result.error or "find failed"))
        return parse_manifest(result.output)

    async def list_directory(self, user_id: str, path: str) -> list[ManifestEntry]:
        container = await self._require_container(user_id)
        target = self._resolve(path)
        if not await self._check(user_id, container, ["test", "-d", target]):
            raise PathNotFoundError(f"Directory not found: {path}", path=path)
        result = await self._exec(user_id, container, self._find_argv(target, maxdepth=1))
        return parse_manifest(result.output, base=self._relative(target))

    async def create_directory(self, user_id: str, path: str) -> None:
        container = await self._require_container(user_id)
        target = self._resolve(path)
        if target == self._workdir:
            raise ValidationError("Directory path is empty", path=path)
        await self._mkdir(user_id, container, target)

    async def is_directory(self, user_id: str, path: str) -> bool:
        container = await self._require_container(user_id)
        return await self._check(user_id, container, ["test", "-d", self._resolve(path)])

    async def delete_path(self, user_id: str, path: str) -> None:
        container = await self._require_container(user_id)
        target = self._resolve(path)
        if target == self._workdir:
            raise ValidationError("Cannot delete the workspace root", path=path)
        if not await self._check(user_id, container, ["test", "-e", target]):
            raise PathNotFoundError(f"Path not found: {path}", path=path)
        result = await self._exec(user_id, container, ["rm", "-rf", "--", target])
        if not result.success:
            raise ContainerUnavailableError(f"Delete failed: {result.error}", user_id=user_id, path=path)

    async def rename_path(self, user_id: str, old: str, new: str) -> None:
        container = await self._require_container(user_id)
        source = self._resolve(old)
        target = self._resolve(new)
        if self._workdir in (source, target):
            raise ValidationError("Cannot rename the workspace root", path=old)
        if not await self._check(user_id, container, ["test", "-e", source]):
            raise PathNotFoundError(f"Path not found: {old}", path=old)

        await self._mkdir(user_id, container, posixpath.dirname(target))
        result = await self._exec(user_id, container, ["mv", "-f", "-T", "--", source, target])
        if not result.success:
            raise ValidationError(f"Rename failed: {result.error}", path=old, new_path=new)
