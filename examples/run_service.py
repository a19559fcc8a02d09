import asyncio
import sys
from pathlib import Path

from backup_scheduler.config import get_settings
from backup_scheduler.logging_config import configure_logging
from backup_scheduler.providers.in_memory import InMemoryConfigProvider
from backup_scheduler.service import BackupService

# Usage: python run_service.py devices.json
# Settings come from BACKUP_SCHEDULER_* environment variables or a .env file.


async def print_progress(service: BackupService):
    async for progress in service.progress:
        print(
            f"[{progress.status}] {progress.device_name}/{progress.share_name or '*'} "
            f"{progress.percent_complete:5.1f}% {progress.files_processed} files "
            f"{progress.current_file or ''}"
        )


async def main(config_path: Path):
    settings = get_settings()
    configure_logging(settings.log_level)
    provider = InMemoryConfigProvider.from_json_file(config_path)
    service = BackupService.from_settings(settings, provider)

    printer = asyncio.create_task(print_progress(service))
    try:
        await service.run()
    finally:
        printer.cancel()

if __name__ == "__main__":
    asyncio.run(main(Path(sys.argv[1] if len(sys.argv) > 1 else "devices.json")))
