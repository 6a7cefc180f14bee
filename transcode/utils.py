import os
from datetime import datetime
from pathlib import Path


def write_log(log_path, message):
    """Append message to log file"""
    if log_path:
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        with open(log_path, 'a') as f:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
            f.write(f"[{timestamp}] {message}\n")


def job_log_path(log_dir, asset_id, variant_key):
    """
    Log file of one (asset, variant) job.

    Returns:
        Path or None when logging to files is disabled
    """
    if not log_dir:
        return None
    return Path(log_dir) / str(asset_id) / f'{variant_key}.log'
