"""
farside agent that performs file system and process operations on a host.

The agent is not installed on remote hosts. Its source is passed as an inline program
argument to the host's Python interpreter (python3 -u -c <source>), so this module must
stay self-contained and only use the standard library of any reasonably recent
Python 3.

It announces itself with a ready message on stdout and then answers JSON Lines requests
from stdin. Requests are handled by a small pool of worker threads, and every spawned
command gets a thread of its own. Responses for different requests may therefore
interleave, but a request's data messages are always written before its result or
error. stderr is used for diagnostics only.
"""

import base64
import binascii
from concurrent.futures import ThreadPoolExecutor
import contextlib
import errno
import json
import os
import stat
import subprocess
import sys
import threading
import uuid

# Must match the major version of the client's protocol
VERSION = "1.0.0"

# Size of streamed read chunks before base64 encoding
CHUNK_SIZE = 64 * 1024

WORKER_COUNT = 4


def log(message):
    sys.stderr.write(f"farside-agent: {message}\n")
    sys.stderr.flush()


class InvalidRequest(Exception):
    """Raised for requests with missing or invalid parameters."""


class Output:
    """Thread-safe writer of response lines."""

    def __init__(self, stream):
        self._stream = stream
        self._lock = threading.Lock()

    def send(self, obj):
        line = json.dumps(obj, separators=(",", ":")) + "\n"

        with self._lock:
            self._stream.write(line.encode())
            self._stream.flush()


def _error_code(e):
    """Turn an exception into the code reported to the client (errno name if any)."""
    if isinstance(e, OSError) and e.errno is not None:
        return errno.errorcode.get(e.errno, e.errno)
    elif isinstance(e, (InvalidRequest, KeyError, TypeError, ValueError)):
        return "EINVAL"
    else:
        return "EIO"


def _error_message(e):
    if isinstance(e, OSError) and e.strerror:
        if e.filename is not None:
            return f"{e.strerror}: {e.filename}"
        else:
            return e.strerror
    elif isinstance(e, KeyError):
        return f"missing parameter {e}"
    else:
        return str(e) or e.__class__.__name__


def _entry_type(mode):
    if stat.S_ISDIR(mode):
        return "dir"
    elif stat.S_ISLNK(mode):
        return "symlink"
    else:
        return "file"


class AgentService:
    """Implementation of the methods that clients can call."""

    methods = (
        "ls",
        "read",
        "write",
        "stat",
        "exists",
        "mkdir",
        "rm",
        "realpath",
        "spawn",
    )

    def __init__(self, output):
        self._output = output

    def handle(self, request):
        """Handle a single decoded request and send its response(s)."""
        request_id = request.get("id")
        method = request.get("method")
        params = request.get("params") or {}

        def emit(data):
            self._output.send({"id": request_id, "data": data})

        try:
            if method not in self.methods:
                raise OSError(errno.ENOSYS, f"unknown method '{method}'")

            if not isinstance(params, dict):
                raise InvalidRequest("params must be an object")

            result = getattr(self, method)(params, emit)
        except Exception as e:
            error = {"message": _error_message(e), "code": _error_code(e)}
            self._output.send({"id": request_id, "error": error})
        else:
            self._output.send({"id": request_id, "result": result})

    #
    # Metadata access
    #

    @staticmethod
    def ls(params, emit):
        entries = []

        with os.scandir(params["path"]) as it:
            for entry in it:
                item = {"name": entry.name, "path": entry.path}

                try:
                    st = entry.stat(follow_symlinks=False)
                    item["type"] = _entry_type(st.st_mode)
                except OSError:
                    # Vanished while listing
                    continue

                if item["type"] == "symlink":
                    item["target_is_dir"] = os.path.isdir(entry.path)

                entries.append(item)

        entries.sort(key=lambda e: e["name"])

        return {"entries": entries}

    @staticmethod
    def stat(params, emit):
        path = params["path"]
        follow_symlinks = params.get("follow_symlinks", True)

        st = os.stat(path, follow_symlinks=follow_symlinks)

        result = {
            "type": _entry_type(st.st_mode),
            "size": st.st_size,
            "mtime": st.st_mtime,
            "mode": stat.S_IMODE(st.st_mode),
            "uid": st.st_uid,
            "gid": st.st_gid,
            "readonly": not os.access(path, os.W_OK),
        }

        if result["type"] == "symlink":
            result["target_is_dir"] = os.path.isdir(path)

        return result

    @staticmethod
    def exists(params, emit):
        return {"exists": os.path.exists(params["path"])}

    @staticmethod
    def realpath(params, emit):
        path = params["path"]

        # Fail like a strict realpath for missing paths
        os.stat(path)

        return {"path": os.path.realpath(path)}

    #
    # File contents
    #

    @staticmethod
    def read(params, emit):
        offset = params.get("offset") or 0
        remaining = params.get("length")

        total = 0

        with open(params["path"], "rb") as f:
            if offset:
                f.seek(offset)

            while remaining is None or remaining > 0:
                size = CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining)
                chunk = f.read(size)

                if not chunk:
                    break

                emit({"data": base64.b64encode(chunk).decode("ascii")})

                total += len(chunk)

                if remaining is not None:
                    remaining -= len(chunk)

        return {"size": total}

    @staticmethod
    def write(params, emit):
        try:
            data = base64.b64decode(params["data"], validate=True)
        except (binascii.Error, TypeError) as e:
            raise InvalidRequest(f"invalid base64 payload: {e}")

        # Write through symlinks to their target
        path = os.path.realpath(params["path"])

        try:
            mode = stat.S_IMODE(os.stat(path).st_mode)
        except FileNotFoundError:
            mode = None

        # Readers never see a half-written file, the temporary file is renamed over
        # the original once complete
        temp_path = os.path.join(
            os.path.dirname(path),
            f".{os.path.basename(path)}.{uuid.uuid4().hex}.tmp",
        )

        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            if mode is not None:
                os.chmod(temp_path, mode)

            os.replace(temp_path, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(temp_path)
            raise

        return {"size": len(data)}

    #
    # File system structure
    #

    @staticmethod
    def mkdir(params, emit):
        if params.get("parents"):
            os.makedirs(params["path"], exist_ok=True)
        else:
            os.mkdir(params["path"])

        return {}

    @staticmethod
    def rm(params, emit):
        path = params["path"]

        if os.path.isdir(path) and not os.path.islink(path):
            os.rmdir(path)
        else:
            os.unlink(path)

        return {}

    #
    # Processes
    #

    @staticmethod
    def spawn(params, emit):
        command = [params["cmd"]] + [str(arg) for arg in params.get("args", [])]

        proc = subprocess.Popen(
            command,
            cwd=params.get("cwd"),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

        def forward(stream, name):
            for chunk in iter(lambda: stream.read1(CHUNK_SIZE), b""):
                encoded = base64.b64encode(chunk).decode("ascii")
                emit({"data": encoded, "stream": name})

        threads = [
            threading.Thread(target=forward, args=(proc.stdout, "stdout")),
            threading.Thread(target=forward, args=(proc.stderr, "stderr")),
        ]

        for t in threads:
            t.start()

        for t in threads:
            t.join()

        return {"exit_code": proc.wait()}


def main():
    output = Output(sys.stdout.buffer)
    service = AgentService(output)

    output.send({"ready": True, "version": VERSION, "pid": os.getpid()})

    with ThreadPoolExecutor(WORKER_COUNT) as pool:
        for line in sys.stdin.buffer:
            if not line.strip():
                continue

            try:
                request = json.loads(line)
            except ValueError as e:
                log(f"ignoring malformed request: {e}")
                continue

            if not isinstance(request, dict) or "id" not in request:
                log(f"ignoring request without id: {line[:80]!r}")
                continue

            if request.get("method") == "spawn":
                # Lives as long as the command, so it must not hold up a worker
                threading.Thread(
                    target=service.handle, args=(request,), daemon=True
                ).start()
            else:
                pool.submit(service.handle, request)


if __name__ == "__main__":
    main()
