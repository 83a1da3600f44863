#!/usr/bin/env python3
"""
Maintenance script for the Levanter deploy bot
"""
import os
import sys
import shutil
import sqlite3
from datetime import datetime
from typing import Optional

from config_manager import Config
from database_manager import DatabaseManager


def backup_database(db_path: str, backup_dir: str = "backups") -> Optional[str]:
    """Create a consistent copy of the database; returns the backup path"""
    if not os.path.exists(db_path):
        return None

    os.makedirs(backup_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    name = os.path.splitext(os.path.basename(db_path))[0]
    backup_file = os.path.join(backup_dir, f"{name}_backup_{timestamp}.db")

    # The backup API copies a live database consistently
    source = sqlite3.connect(db_path)
    try:
        target = sqlite3.connect(backup_file)
        try:
            source.backup(target)
        finally:
            target.close()
    finally:
        source.close()
    return backup_file


def restore_database(backup_file: str, db_path: str):
    shutil.copy2(backup_file, db_path)


def main():
    if len(sys.argv) < 2:
        print("Usage: levanter-maintenance <command>")
        print("Commands:")
        print("  cleanup        - Remove duplicate owners, keeping the newest per app")
        print("  backup         - Create database backup")
        print("  restore <file> - Restore the database from a backup")
        print("  stats          - Show database statistics")
        return

    config = Config()
    db_path = config.get("database_path", "deploy_bot.db")
    command = sys.argv[1].lower()

    if command == "cleanup":
        db = DatabaseManager(db_path)
        removed = db.resolve_duplicate_owners()
        print(f"Removed {removed} duplicate ownership records")

    elif command == "backup":
        print("Creating database backup...")
        backup_file = backup_database(db_path)
        if backup_file:
            print(f"✅ Backup created: {backup_file}")
        else:
            print("❌ No database found to backup")

    elif command == "restore":
        if len(sys.argv) < 3 or not os.path.exists(sys.argv[2]):
            print("❌ Usage: levanter-maintenance restore <existing backup file>")
            sys.exit(1)
        restore_database(sys.argv[2], db_path)
        print(f"✅ Restored {db_path} from {sys.argv[2]}")

    elif command == "stats":
        db = DatabaseManager(db_path)
        stats = db.get_global_statistics()

        print("\n📊 Bot Statistics:")
        print(f"Total apps: {stats['total_apps']}")
        print(f"Owners: {stats['total_owners']}")
        print(f"Deploy keys: {stats['deploy_keys']} ({stats['deploy_key_uses_left']} uses left)")
        print(f"Free trial users: {stats['free_trial_users']}")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
