"""
Resource monitoring utilities
资源监控工具 - 为健康检查提供进程内存与 CPU 使用情况
"""

import logging
from typing import Dict, Optional

import psutil

from truthdare.core.config import settings

logger = logging.getLogger(__name__)


class ResourceMonitor:
    """Report process resource usage against the configured limits"""

    def __init__(self, max_memory_mb: Optional[int] = None, max_cpu_percent: Optional[float] = None):
        self.max_memory_mb = max_memory_mb or settings.MAX_MEMORY_MB
        self.max_cpu_percent = max_cpu_percent or settings.MAX_CPU_PERCENT
        self._process = psutil.Process()

    def get_current_usage(self) -> Dict[str, float]:
        memory_mb = 0.0
        cpu_percent = 0.0
        try:
            memory_mb = self._process.memory_info().rss / 1024 / 1024
            cpu_percent = self._process.cpu_percent()
        except psutil.Error as e:
            logger.error(f"Failed to get resource usage: {e}")

        return {
            "memory_mb": round(memory_mb, 1),
            "memory_percent": round(memory_mb / self.max_memory_mb * 100, 1),
            "cpu_percent": cpu_percent,
            "memory_limit_mb": self.max_memory_mb,
            "cpu_limit_percent": self.max_cpu_percent,
        }

    def is_under_pressure(self, usage: Optional[Dict[str, float]] = None) -> bool:
        """内存或 CPU 超过限制时返回 True"""
        usage = usage or self.get_current_usage()
        return usage["memory_mb"] > self.max_memory_mb or usage["cpu_percent"] > self.max_cpu_percent


# Global resource monitor instance
resource_monitor = ResourceMonitor()
