"""
Power BI Desktop Instance Discovery
Finds locally running Power BI Desktop instances via their msmdsrv.exe
(Analysis Services engine) processes and listening ports
"""
import logging
from typing import Any, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

ENGINE_PROCESS_NAME = "msmdsrv.exe"


class PowerBIDesktopConnector:
    """Discovers Power BI Desktop instances running locally"""

    def __init__(self):
        self.current_port: Optional[int] = None

    def discover_instances(self) -> List[Dict[str, Any]]:
        """
        Discover all running Power BI Desktop instances

        Returns:
            List of instances with pid, port and connection string
        """
        instances = []

        for proc in psutil.process_iter(['pid', 'name']):
            try:
                if not proc.info['name'] or proc.info['name'].lower() != ENGINE_PROCESS_NAME:
                    continue

                pid = proc.info['pid']
                port = None
                try:
                    for conn in proc.net_connections():
                        if conn.status == psutil.CONN_LISTEN and conn.laddr.ip in ('127.0.0.1', '0.0.0.0', '::1'):
                            port = conn.laddr.port
                            break
                except (psutil.AccessDenied, psutil.ZombieProcess):
                    continue

                if port:
                    instances.append({
                        'pid': pid,
                        'port': port,
                        'connection_string': f"Data Source=localhost:{port}"
                    })
                    logger.info(f"Found Power BI Desktop instance: port={port}, pid={pid}")

            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return instances

    def default_port(self) -> Optional[int]:
        """Port of the first discovered instance, remembered as the current port"""
        instances = self.discover_instances()
        if not instances:
            logger.warning("No Power BI Desktop instances found")
            return None
        self.current_port = instances[0]['port']
        return self.current_port
