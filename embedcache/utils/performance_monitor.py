# utils/performance_monitor.py

import time

import psutil


def memory_pressure(threshold_percent: float) -> bool:
    """True when system memory usage is at or above the threshold"""
    return psutil.virtual_memory().percent >= threshold_percent


def get_system_info() -> dict:
    """Get current system information"""
    memory = psutil.virtual_memory()
    process = psutil.Process()

    return {
        'cpu_count': psutil.cpu_count(logical=False),
        'cpu_count_logical': psutil.cpu_count(logical=True),
        'memory_total_gb': memory.total / (1024**3),
        'memory_available_gb': memory.available / (1024**3),
        'memory_percent': memory.percent,
        'process_rss_mb': process.memory_info().rss / (1024**2),
        'timestamp': time.time()
    }
