#!/usr/bin/env python3
"""
Game Share - shared configuration, logging and admin command line.

Run ``python3 gameshare.py init`` once to create the database tables, the
upload directories and the first administrator account.
"""

import argparse
import json
import logging
import os
import secrets
import sys
from typing import Dict, Optional

from colorama import init, Fore, Style
from dotenv import load_dotenv

import database
from app.errors import GameShareError
from app.repositories import AssetRepository
from app.services import CatalogService, UserService

# Initialize colorama for cross-platform colored output
init(autoreset=True)

MIB = 1024 * 1024

DEFAULT_CONFIG: Dict = {
    'database_url': 'sqlite:///gameshare.db',
    'upload_dir': 'uploads',
    'image_dir': None,
    'game_dir': None,
    'max_image_size': 10 * MIB,
    'max_file_size': 1024 * MIB,
    'host': '0.0.0.0',
    'port': 4000,
    'base_url': None,
    'secret_key': None,
    'token_max_age': 30 * 24 * 3600,
    'log_level': 'INFO',
}

# config key -> (environment variable, converter)
ENV_OVERRIDES = {
    'database_url': ('DATABASE_URL', str),
    'upload_dir': ('UPLOAD_DIR', str),
    'image_dir': ('IMAGE_UPLOAD_DIR', str),
    'game_dir': ('GAME_UPLOAD_DIR', str),
    'max_image_size': ('MAX_IMAGE_SIZE', int),
    'max_file_size': ('MAX_FILE_SIZE', int),
    'host': ('HOST', str),
    'port': ('PORT', int),
    'base_url': ('BASE_URL', str),
    'secret_key': ('SECRET_KEY', str),
    'token_max_age': ('TOKEN_MAX_AGE', int),
    'log_level': ('GAMESHARE_LOG_LEVEL', str),
}


def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root Game Share logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal CLI use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, level.upper(), logging.WARNING)
    logger = logging.getLogger('gameshare')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


logger = logging.getLogger('gameshare')


def load_config(config_path: Optional[str] = 'config.json',
                overrides: Optional[Dict] = None) -> Dict:
    """Build the effective configuration.

    Precedence, lowest first: built-in defaults, ``config.json`` (optional),
    environment variables (``.env`` is loaded first), then *overrides*.
    Derived values (upload sub-directories, base URL, secret key) are filled
    in last.
    """
    load_dotenv()
    config = dict(DEFAULT_CONFIG)

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                config.update(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read %s: %s", config_path, e)

    for key, (env_name, convert) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == '':
            continue
        try:
            config[key] = convert(raw)
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", env_name, raw)

    if overrides:
        config.update(overrides)

    if not config.get('image_dir'):
        config['image_dir'] = os.path.join(config['upload_dir'], 'images')
    if not config.get('game_dir'):
        config['game_dir'] = os.path.join(config['upload_dir'], 'games')
    if not config.get('base_url'):
        config['base_url'] = f"http://localhost:{config['port']}"
    if not config.get('secret_key'):
        logger.warning("SECRET_KEY not set; using a random key, tokens will not survive a restart")
        config['secret_key'] = secrets.token_hex(32)
    return config


def build_asset_repository(config: Dict) -> AssetRepository:
    return AssetRepository(
        base_url=config['base_url'],
        image_dir=config['image_dir'],
        game_dir=config['game_dir'],
        max_image_size=config['max_image_size'],
        max_file_size=config['max_file_size'],
    )


SAMPLE_USERS = [
    ('John Doe', 'john@example.com', 'password123'),
    ('Jane Smith', 'jane@example.com', 'password123'),
]


def cmd_init(args, config: Dict) -> int:
    """Create tables, upload directories, the admin and optional sample users."""
    session_factory = database.configure(config['database_url'])
    if not database.init_db():
        print(f"{Fore.RED}✗ Could not create database tables (see log)")
        return 1
    print(f"{Fore.GREEN}✓ Database ready: {config['database_url']}")

    build_asset_repository(config).ensure_directories()
    print(f"{Fore.GREEN}✓ Upload directories ready: {config['image_dir']}, {config['game_dir']}")

    users = UserService(database, config['secret_key'], config['token_max_age'])
    db = session_factory()
    try:
        if args.admin_email and args.admin_password:
            user, created = users.create_admin(db, args.admin_name, args.admin_email,
                                               args.admin_password)
            if created:
                print(f"{Fore.GREEN}✓ Admin user created: {user.email}")
            else:
                print(f"{Fore.YELLOW}Admin user already exists: {user.email}")
        if args.sample_users:
            for name, email, password in SAMPLE_USERS:
                user, created = users.create_user(db, name, email, password)
                if created:
                    print(f"{Fore.GREEN}✓ Created user: {name} ({email})")
    except GameShareError as e:
        print(f"{Fore.RED}✗ {e.message}")
        return 1
    finally:
        db.close()
    return 0


def cmd_list(args, config: Dict) -> int:
    """Print one page of the public catalog."""
    session_factory = database.configure(config['database_url'])
    catalog = CatalogService(database)
    db = session_factory()
    try:
        result = catalog.list(db, category=args.category, search=args.search,
                              sort=args.sort, order=args.order,
                              page=args.page, page_size=args.limit)
        if not result.items:
            print(f"{Fore.YELLOW}No games found.")
        for game in result.items:
            print(f"{Fore.CYAN}{game.title}{Style.RESET_ALL} "
                  f"[{game.category}] by {game.owner_name} - "
                  f"{game.formatted_file_size}, {game.download_count} downloads, "
                  f"rating {game.average_rating} ({game.rating_count})")
        print(f"\nPage {result.page}/{max(result.pages, 1)} - {result.total} game(s)")
    except GameShareError as e:
        print(f"{Fore.RED}✗ {e.message}")
        return 1
    finally:
        db.close()
    return 0


def cmd_stats(args, config: Dict) -> int:
    session_factory = database.configure(config['database_url'])
    db = session_factory()
    try:
        totals = database.get_catalog_totals(db)
    finally:
        db.close()
    print(f"{Fore.CYAN}📊 Game Share statistics")
    print(f"  Users:        {totals['users']}")
    print(f"  Games:        {totals['games']} ({totals['active_games']} active)")
    print(f"  Downloads:    {totals['downloads']}")
    print(f"  Reviews:      {totals['reviews']}")
    return 0


def main(argv=None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='Game Share - administration tools',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 gameshare.py init --admin-email admin@gameshare.com --admin-password secret1
  python3 gameshare.py list --category RPG --page 2
  python3 gameshare.py stats
        """
    )
    parser.add_argument(
        '--config', '-c',
        default='config.json',
        help='Path to config file (default: config.json)'
    )
    sub = parser.add_subparsers(dest='command', required=True)

    p_init = sub.add_parser('init', help='Create tables, upload directories and the admin user')
    p_init.add_argument('--admin-name', default='Admin')
    p_init.add_argument('--admin-email')
    p_init.add_argument('--admin-password')
    p_init.add_argument('--sample-users', action='store_true',
                        help='Also create two demo accounts')
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser('list', help='List active games')
    p_list.add_argument('--category')
    p_list.add_argument('--search')
    p_list.add_argument('--sort', default='createdAt')
    p_list.add_argument('--order', default='desc', choices=('asc', 'desc'))
    p_list.add_argument('--page', type=int, default=1)
    p_list.add_argument('--limit', type=int, default=20)
    p_list.set_defaults(func=cmd_list)

    p_stats = sub.add_parser('stats', help='Show site-wide counters')
    p_stats.set_defaults(func=cmd_stats)

    args = parser.parse_args(argv)
    config = load_config(args.config)
    setup_logging(config.get('log_level', 'WARNING'))
    return args.func(args, config)


if __name__ == "__main__":
    sys.exit(main())
