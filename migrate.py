"""
Apply database migrations without starting the web server.

Usage:
  python migrate.py            # upgrade to head
  python migrate.py --sql      # print the SQL instead of running it

Schema changes live in migrations/versions as raw SQL Alembic revisions.
"""

import argparse
import os
import sys

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')


def build_config():
    cfg = Config()
    cfg.set_main_option('script_location', MIGRATIONS_DIR)
    return cfg


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Apply EduPlanner database migrations.')
    parser.add_argument('--revision', default='head', help='Target revision (default: head)')
    parser.add_argument('--sql', action='store_true', help='Emit SQL only (offline mode)')
    return parser.parse_args(argv)


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)
    if not (os.environ.get('DATABASE_URL') or '').strip():
        print('DATABASE_URL not found. Set it in .env', file=sys.stderr)
        return 1

    try:
        print('Applying database migrations...')
        command.upgrade(build_config(), args.revision, sql=args.sql)
        print('✓ Migrations completed successfully.')
    except Exception as e:
        print(f'✗ Migration failed: {e}', file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
