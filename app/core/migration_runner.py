import importlib.util
from pathlib import Path

import structlog

from core.migration_tracker import MigrationTracker

logger = structlog.get_logger(__name__)

PLUGINS_DIR = Path(__file__).resolve().parent.parent / "plugins"


def _load(plugin_name: str, mig_file: Path):
    # versioned file names like 1.0.0_init.py are not importable by dotted path
    spec = importlib.util.spec_from_file_location(
        f"plugins.{plugin_name}.migrations.m_{mig_file.stem.replace('.', '_')}", mig_file
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


async def run_plugin_migrations(plugin_name: str, db, plugins_dir: Path = PLUGINS_DIR):
    """Run all pending migrations for a plugin. Returns the file names applied."""
    tracker = MigrationTracker(db)
    applied = {m["file"] for m in await tracker.get_applied(plugin_name)}
    ran = []

    for mig_file in sorted((plugins_dir / plugin_name / "migrations").glob("*.py")):
        if mig_file.name in applied or mig_file.name.startswith("__"):
            continue
        module = _load(plugin_name, mig_file)
        if hasattr(module, "run"):
            logger.info("migration_applying", plugin=plugin_name, file=mig_file.name)
            await module.run(db)
            await tracker.record_migration(plugin_name, mig_file.stem.split("_")[0], mig_file.name)
            ran.append(mig_file.name)
    logger.info("migrations_up_to_date", plugin=plugin_name, applied=len(ran))
    return ran


async def rollback_last_migration(plugin_name: str, db, plugins_dir: Path = PLUGINS_DIR):
    """Rollback the most recent migration for a plugin."""
    tracker = MigrationTracker(db)
    last = await tracker.get_last_applied(plugin_name)
    if not last:
        logger.warning("migration_rollback_nothing", plugin=plugin_name)
        return None

    file_name = last["file"]
    module = _load(plugin_name, plugins_dir / plugin_name / "migrations" / file_name)
    if not hasattr(module, "rollback"):
        logger.warning("migration_rollback_undefined", plugin=plugin_name, file=file_name)
        return None
    logger.info("migration_rolling_back", plugin=plugin_name, file=file_name)
    await module.rollback(db)
    await tracker.mark_rollback(plugin_name, last["version"])
    return file_name
