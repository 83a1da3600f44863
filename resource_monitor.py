import psutil
import asyncio
import logging
from typing import Dict, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

# Heroku's basic dyno quota; past it the platform logs R14
DEFAULT_MEMORY_QUOTA_MB = 512


class ResourceMonitor:
    """Sample memory and CPU of the supervised bot and its child processes"""

    def __init__(self, pid: int, memory_quota_mb: int = DEFAULT_MEMORY_QUOTA_MB, interval: float = 60):
        self.pid = pid
        self.memory_quota = memory_quota_mb * 1024 * 1024
        self.interval = interval
        self.start_time = datetime.now()
        self.peak_memory = 0
        self.samples = 0

    def sample(self) -> Optional[Dict]:
        """Current usage of the process tree, or None once it has exited"""
        try:
            process = psutil.Process(self.pid)
            tree = [process] + process.children(recursive=True)
        except psutil.NoSuchProcess:
            return None

        rss = 0
        cpu = 0.0
        for proc in tree:
            try:
                rss += proc.memory_info().rss
                cpu += proc.cpu_percent()
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                continue

        self.samples += 1
        self.peak_memory = max(self.peak_memory, rss)
        return {
            'pid': self.pid,
            'processes': len(tree),
            'rss': rss,
            'rss_mb': rss / (1024 * 1024),
            'peak_memory_mb': self.peak_memory / (1024 * 1024),
            'cpu_percent': cpu,
            'quota_percent': (rss / self.memory_quota) * 100 if self.memory_quota else 0,
            'runtime': str(datetime.now() - self.start_time).split('.')[0],
        }

    async def monitor_loop(self):
        """Log a sample every interval until the process is gone"""
        while True:
            await asyncio.sleep(self.interval)
            stats = self.sample()
            if stats is None:
                logger.info(f"Process {self.pid} exited, stopping resource monitor")
                return
            message = (
                f"Bot memory {stats['rss_mb']:.0f} MB ({stats['quota_percent']:.0f}% of quota), "
                f"CPU {stats['cpu_percent']:.1f}%, {stats['processes']} process(es)"
            )
            if stats['rss'] > self.memory_quota * 0.9:
                logger.warning(message)
            else:
                logger.info(message)
