import atexit
import logging
import socket
import subprocess
import sys
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import psutil

from .errors import ProxyError

logger = logging.getLogger(__name__)

@dataclass
class ProxyHandle:
    process: subprocess.Popen
    ws_port: int
    target_host: str
    target_port: int

    @property
    def running(self) -> bool:
        return self.process.poll() is None

class ProxyManager:
    """One websockify process per VM, bridging WebSocket clients to its display port."""

    def __init__(self, host: str = "127.0.0.1", start_port: int = 6080, port_range: int = 100):
        self.host = host
        self.start_port = start_port
        self.port_range = port_range
        self.proxies: Dict[str, ProxyHandle] = {}
        # Register cleanup on exit
        atexit.register(self.stop_all)

    def start_proxy(self, vm_id: str, target_host: str, target_port: int) -> int:
        """Start (or reuse) the proxy for a VM and return its WebSocket port."""
        handle = self.proxies.get(vm_id)
        if handle is not None:
            if handle.running and (handle.target_host, handle.target_port) == (target_host, target_port):
                logger.debug(f"Reusing existing proxy for VM {vm_id} on port {handle.ws_port}")
                return handle.ws_port
            # Display port changed or the process died
            self.stop_proxy(vm_id)

        success, ws_port = self._find_free_port()
        if not success:
            raise ProxyError("No available ports for WebSocket proxy")

        command = [sys.executable, '-m', 'websockify',
                   f"{self.host}:{ws_port}", f"{target_host}:{target_port}"]
        logger.info(f"Starting WebSocket proxy for VM {vm_id} on port {ws_port} -> {target_host}:{target_port}")
        try:
            process = subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise ProxyError(f"Failed to start websockify: {e}")

        self.proxies[vm_id] = ProxyHandle(process, ws_port, target_host, target_port)
        return ws_port

    def stop_proxy(self, vm_id: str) -> bool:
        """Stop the proxy for a VM; False when none was running."""
        handle = self.proxies.pop(vm_id, None)
        if handle is None:
            return False
        logger.info(f"Stopping WebSocket proxy for VM {vm_id} on port {handle.ws_port}")
        self._stop_process(handle.process)
        return True

    def stop_all(self):
        for vm_id in list(self.proxies):
            self.stop_proxy(vm_id)

    def get_proxy_port(self, vm_id: str) -> Optional[int]:
        handle = self.proxies.get(vm_id)
        return handle.ws_port if handle is not None and handle.running else None

    def _stop_process(self, process: subprocess.Popen, timeout: int = 5):
        try:
            proc = psutil.Process(process.pid)
            # Try graceful shutdown first
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                logger.warning(f"Proxy process {process.pid} did not stop gracefully, forcing...")
                proc.kill()
                proc.wait(timeout=1)
        except (psutil.NoSuchProcess, psutil.ZombieProcess, ProcessLookupError):
            pass
        except psutil.TimeoutExpired as e:
            logger.error(f"Error stopping proxy process {process.pid}: {e}")
        finally:
            # Reap the child so it does not linger as a zombie
            if process.poll() is None:
                try:
                    process.wait(timeout=1)
                except subprocess.TimeoutExpired:
                    pass

    def _find_free_port(self) -> Tuple[bool, Optional[int]]:
        """Find a free port in the configured range."""
        used_ports = {handle.ws_port for handle in self.proxies.values()}
        for port in range(self.start_port, self.start_port + self.port_range):
            if port in used_ports:
                continue
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                    s.bind((self.host, port))
                    return True, port
            except OSError:
                continue
        return False, None
