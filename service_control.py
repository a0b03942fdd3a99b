#!/usr/bin/env python3
"""
System Service Control for the Hawa UDP Proxy
Installs and drives the relay as a systemd unit through systemctl
"""

import logging
import os
import shlex
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from config_manager import ServiceConfig

logger = logging.getLogger(__name__)

CONTROL_ACTIONS = ('start', 'stop', 'restart', 'install', 'uninstall', 'status')


class ServiceControlError(Exception):
    """Service installation or control failure"""
    pass


class SystemdServiceManager:
    """Manage the relay as a systemd service"""

    def __init__(self, service_config: ServiceConfig, exec_args: Optional[List[str]] = None,
                 systemctl: str = 'systemctl'):
        self.config = service_config
        self.exec_args = exec_args if exec_args is not None else []
        self.systemctl = systemctl

    @property
    def unit_name(self) -> str:
        return f"{self.config.name}.service"

    @property
    def unit_path(self) -> Path:
        return Path(self.config.unit_dir) / self.unit_name

    def exec_command(self) -> str:
        """Command line systemd runs: this interpreter, the entry script, and the relay flags"""
        script = os.path.abspath(sys.argv[0])
        return shlex.join([sys.executable, script] + list(self.exec_args))

    def render_unit(self) -> str:
        """Render the systemd unit file"""
        lines = [
            "[Unit]",
            f"Description={self.config.display_name} - {self.config.description}",
            "Requires=network.target",
            "After=network-online.target syslog.target",
            "",
            "[Service]",
            f"ExecStart={self.exec_command()}",
            f"Restart={self.config.restart}",
            f"SuccessExitStatus={self.config.success_exit_status}",
        ]
        if self.config.user:
            lines.append(f"User={self.config.user}")
        lines += [
            "",
            "[Install]",
            "WantedBy=multi-user.target",
            "",
        ]
        return "\n".join(lines)

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.systemctl, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=check)
        except subprocess.CalledProcessError as e:
            logger.error(f"Command failed: {' '.join(cmd)}")
            logger.error(f"Command error: {e.stderr}")
            raise ServiceControlError(f"{' '.join(cmd)} failed: {e.stderr.strip() or e.returncode}")
        except FileNotFoundError:
            raise ServiceControlError(f"{self.systemctl} not found - systemd is required")

    def is_installed(self) -> bool:
        return self.unit_path.is_file()

    def install(self):
        """Write the unit file and enable it"""
        if self.is_installed():
            raise ServiceControlError(f"Service {self.unit_name} is already installed")
        try:
            self.unit_path.parent.mkdir(parents=True, exist_ok=True)
            self.unit_path.write_text(self.render_unit())
        except OSError as e:
            raise ServiceControlError(f"Cannot write {self.unit_path}: {e}")
        self._run('daemon-reload')
        self._run('enable', self.unit_name)
        logger.info(f"Service '{self.config.name}' installed at {self.unit_path}")

    def uninstall(self):
        """Disable the unit and remove its file"""
        if not self.is_installed():
            raise ServiceControlError(f"Service {self.unit_name} is not installed")
        self._run('disable', self.unit_name, check=False)
        try:
            self.unit_path.unlink()
        except OSError as e:
            raise ServiceControlError(f"Cannot remove {self.unit_path}: {e}")
        self._run('daemon-reload')
        logger.info(f"Service '{self.config.name}' uninstalled")

    def start(self):
        self._run('start', self.unit_name)
        logger.info(f"Service '{self.config.name}' started")

    def stop(self):
        self._run('stop', self.unit_name)
        logger.info(f"Service '{self.config.name}' stopped")

    def restart(self):
        self._run('restart', self.unit_name)
        logger.info(f"Service '{self.config.name}' restarted")

    def status(self) -> str:
        """systemctl is-active output (active, inactive, failed, ...)"""
        result = self._run('is-active', self.unit_name, check=False)
        return result.stdout.strip() or 'unknown'

    def control(self, action: str) -> Optional[str]:
        """Run one of CONTROL_ACTIONS"""
        if action not in CONTROL_ACTIONS:
            raise ServiceControlError(
                f"Unknown service action {action!r}. Valid actions: {list(CONTROL_ACTIONS)}")
        return getattr(self, action)()
