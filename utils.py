import logging
import shlex
import signal
import subprocess

import yaml

LOG = logging.getLogger("phymv.utils")


def read_yaml_config(filename):
    with open(filename,'r', encoding='utf-8') as file:
        yaml_config  = yaml.load(file, Loader=yaml.FullLoader)
    return yaml_config or {}


def run_command(cmd, input_text=None):
    LOG.debug("cmd: %s", " ".join(shlex.quote(str(x)) for x in cmd))
    try:
        result = subprocess.run(cmd, check=True, input=input_text, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except subprocess.CalledProcessError as exc:
        if exc.stdout:
            LOG.error("stdout: %s", exc.stdout.strip())
        if exc.stderr:
            LOG.error("stderr: %s", exc.stderr.strip())
        raise
    if result.stderr:
        LOG.debug("stderr: %s", result.stderr.strip())
    return result


def setup_logging(verbose: bool):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


class GracefulExit(Exception):
    pass


def install_signal_handlers():
    def handler(signum, frame):
        raise GracefulExit()
    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def format_bytes(value: int) -> str:
    units = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    size = float(value)
    for unit in units:
        if abs(size) < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(size)}{unit}"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}{units[-1]}"
