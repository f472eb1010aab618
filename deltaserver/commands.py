"""
External command runner for the delta server.

Handles running buildah, deltaimage and xdelta3 as subprocesses.
"""

import logging
import subprocess
import tempfile

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1800  # seconds


class CommandError(Exception):
    """An external command failed, timed out or could not be started."""

    def __init__(self, description: str, returncode: int | None, output: str = ""):
        self.description = description
        self.returncode = returncode
        self.output = output
        if returncode is None:
            message = f"{description} did not complete"
        else:
            message = f"{description} failed with exit code {returncode}"
        super().__init__(message)


def run_command(
    cmd: list[str],
    description: str,
    timeout: float = DEFAULT_TIMEOUT,
    input: str | None = None,
) -> str:
    """
    Run an external command and return its standard output.

    Args:
        cmd: Command and arguments
        description: Human-readable description for logging (e.g., "buildah push")
        timeout: Timeout in seconds
        input: Optional text written to the command's stdin

    Returns:
        Captured stdout, stripped of surrounding whitespace

    Raises:
        CommandError: If the command exits non-zero, times out or is missing

    Behavior:
        - In DEBUG mode: streams output line-by-line to logs
        - In normal mode: captures output silently
        - stdin payloads (passwords) are never logged
    """
    logger.info(f"Running {description}")
    logger.debug(f"Running command: {' '.join(cmd)}")

    tool = cmd[0].rsplit("/", 1)[-1]
    is_debug = logger.getEffectiveLevel() == logging.DEBUG

    try:
        if is_debug and input is None:
            # Stream output line-by-line in debug mode; stderr goes to a spool
            # file so a chatty command cannot block on a full pipe
            with tempfile.TemporaryFile(mode="w+") as stderr_file:
                process = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    text=True,
                    bufsize=1,  # Line buffered
                )

                output_lines = []
                for line in process.stdout:
                    line = line.rstrip()
                    if line:
                        logger.debug(f"[{tool}] {line}")
                        output_lines.append(line)
                process.stdout.close()

                try:
                    return_code = process.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
                    raise
                stderr_file.seek(0)
                stderr = stderr_file.read()

            if return_code != 0:
                logger.error(f"{description} failed with exit code {return_code}: {stderr.strip()}")
                raise CommandError(description, return_code, stderr)
            return "\n".join(output_lines)

        # Normal mode: capture output without streaming
        result = subprocess.run(
            cmd,
            check=True,
            input=input,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
        )
        return result.stdout.strip()

    except subprocess.TimeoutExpired:
        logger.error(f"{description} timed out after {timeout}s")
        raise CommandError(description, None, f"timed out after {timeout}s")
    except subprocess.CalledProcessError as e:
        logger.error(f"{description} failed: {(e.stderr or '').strip()}")
        raise CommandError(description, e.returncode, e.stderr or "")
    except OSError as e:
        logger.error(f"{description} could not be started: {e}")
        raise CommandError(description, None, str(e))
