#!/usr/bin/env python3
"""
Game Share web server - REST API for sharing game files.

Users register, upload a game file with a cover image, browse and search the
catalog, download files and leave reviews.  Uploaded files are served from
``/uploads/<images|games>/<name>``.
"""

import argparse
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Dict, List, Optional

from flask import Blueprint, Flask, current_app, g, jsonify, request, send_from_directory
from sqlalchemy.orm import sessionmaker
from werkzeug.exceptions import HTTPException, InternalServerError, RequestEntityTooLarge

import database
import gameshare
from app.errors import GameShareError, InvalidMetadata, InvalidRating, NotFound
from app.repositories import AssetRepository, Upload
from app.services import (
    CatalogService, DownloadService, LifecycleService, ReviewService, UserService,
)
from openapi_spec import build_spec

web_logger = logging.getLogger('gameshare.web')

MIB = 1024 * 1024


@dataclass
class Services:
    """Everything a request handler needs, built once per app."""
    session_factory: sessionmaker
    assets: AssetRepository
    users: UserService
    catalog: CatalogService
    reviews: ReviewService
    downloads: DownloadService
    lifecycle: LifecycleService


api = Blueprint('api', __name__)


# ===========================================================================================
# Helpers
# ===========================================================================================

def _services() -> Services:
    return current_app.extensions['gameshare']


def get_session():
    """Per-request SQLAlchemy session, closed on app-context teardown."""
    if 'db' not in g:
        g.db = _services().session_factory()
    return g.db


def _ok(data=None, http_status: int = 200, **extra):
    body = {'success': True}
    if data is not None:
        body['data'] = data
    body.update(extra)
    return jsonify(body), http_status


def _error(message: str, status: int):
    return jsonify({'success': False, 'error': message}), status


def _bearer_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header[7:].strip() or None
    return None


def require_login(f):
    """Decorator to require a valid bearer token"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return _error('Not authorized, no token', 401)
        g.principal = _services().users.resolve_token(get_session(), token)
        return f(*args, **kwargs)
    return decorated_function


def optional_auth(f):
    """Decorator that resolves the caller when a token is sent, anonymous otherwise"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.principal = None
        token = _bearer_token()
        if token:
            try:
                g.principal = _services().users.resolve_token(get_session(), token)
            except GameShareError:
                g.principal = None
        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    """Decorator to require admin privileges"""
    @wraps(f)
    @require_login
    def decorated_function(*args, **kwargs):
        if not g.principal.is_admin:
            return _error('Admin privileges required', 403)
        return f(*args, **kwargs)
    return decorated_function


def _form_tags(form) -> Optional[List[str]]:
    """Tags from a multipart form: repeated fields, a JSON array or CSV."""
    values = form.getlist('tags') or form.getlist('tags[]')
    if not values:
        return None
    if len(values) == 1:
        raw = values[0].strip()
        if raw.startswith('['):
            try:
                return json.loads(raw)
            except ValueError:
                raise InvalidMetadata('Tags must be an array with maximum 10 items')
        return [t for t in raw.split(',')]
    return values


def _upload(storage) -> Optional[Upload]:
    if storage is None or not storage.filename:
        return None
    return Upload(filename=storage.filename, mimetype=storage.mimetype,
                  stream=storage.stream, size=storage.content_length or None)


def _coerce_rating(value) -> int:
    if isinstance(value, bool):
        raise InvalidRating()
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value.strip())
    raise InvalidRating()


def _public_user(user, viewer) -> Dict:
    data = user.to_dict()
    if viewer is None or not (viewer.is_admin or viewer.id == user.id):
        data.pop('email', None)
    return data


# ===========================================================================================
# Auth Endpoints
# ===========================================================================================

@api.route('/api/auth/register', methods=['POST'])
def api_auth_register():
    """Register a new user"""
    data = request.get_json(silent=True) or {}
    web_logger.info('Register endpoint called for email=%s', data.get('email'))
    user, token = _services().users.register(
        get_session(), data.get('name'), data.get('email'), data.get('password'))
    return _ok({'user': user.to_dict(), 'token': token}, 201)


@api.route('/api/auth/login', methods=['POST'])
def api_auth_login():
    """Log in a user"""
    data = request.get_json(silent=True) or {}
    user, token = _services().users.login(get_session(), data.get('email'), data.get('password'))
    web_logger.info('User logged in: %s', user.id)
    return _ok({'user': user.to_dict(), 'token': token})


@api.route('/api/auth/me', methods=['GET'])
@require_login
def api_auth_me():
    user = _services().users.get(get_session(), g.principal.id)
    return _ok(user.to_dict())


@api.route('/api/auth/profile', methods=['PUT'])
@require_login
def api_auth_profile():
    data = request.get_json(silent=True) or {}
    user = _services().users.update_profile(
        get_session(), g.principal.id, name=data.get('name'), email=data.get('email'))
    return _ok(user.to_dict())


@api.route('/api/auth/password', methods=['PUT'])
@require_login
def api_auth_password():
    data = request.get_json(silent=True) or {}
    _services().users.change_password(
        get_session(), g.principal.id, data.get('currentPassword'), data.get('newPassword'))
    return _ok(message='Password updated successfully')


# ===========================================================================================
# Game Catalog Endpoints
# ===========================================================================================

@api.route('/api/games', methods=['GET'])
def api_list_games():
    """List active games.

    Query: page, limit, category, search, sort, order
    """
    args = request.args
    result = _services().catalog.list(
        get_session(),
        category=args.get('category'),
        search=args.get('search'),
        sort=args.get('sort'),
        order=args.get('order', 'desc'),
        page=args.get('page', 1),
        page_size=args.get('limit'),
    )
    return _ok([game.to_dict() for game in result.items], pagination=result.pagination())


@api.route('/api/games/popular', methods=['GET'])
def api_popular_games():
    limit = request.args.get('limit', 10, type=int)
    games = _services().catalog.popular(get_session(), limit=limit)
    return _ok([game.to_dict() for game in games])


@api.route('/api/games/recent', methods=['GET'])
def api_recent_games():
    limit = request.args.get('limit', 10, type=int)
    games = _services().catalog.recent(get_session(), limit=limit)
    return _ok([game.to_dict() for game in games])


@api.route('/api/games/<game_id>', methods=['GET'])
@optional_auth
def api_get_game(game_id: str):
    """Return one game with its reviews."""
    catalog = _services().catalog
    game = catalog.get(get_session(), game_id, g.principal)
    return _ok(game.to_dict(include_reviews=True,
                            include_history=catalog.can_manage(game, g.principal)))


@api.route('/api/games', methods=['POST'])
@require_login
def api_create_game():
    """Upload a game.

    Multipart form: image, file, title, description, category, tags
    """
    form = request.form
    metadata = {
        'title': form.get('title'),
        'description': form.get('description'),
        'category': form.get('category'),
        'tags': _form_tags(form),
    }
    game = _services().lifecycle.create(
        get_session(), g.principal, metadata,
        image=_upload(request.files.get('image')),
        game_file=_upload(request.files.get('file')),
    )
    web_logger.info('Game %s uploaded by %s', game.id, g.principal.id)
    return _ok(game.to_dict(), 201)


@api.route('/api/games/<game_id>', methods=['PUT'])
@require_login
def api_update_game(game_id: str):
    """Edit title, description, category, tags (and moderation flags for admins)."""
    data = request.get_json(silent=True) or {}
    fields = {k: data[k] for k in ('title', 'description', 'category', 'tags') if k in data}
    if 'isActive' in data:
        fields['is_active'] = data['isActive']
    if 'isVerified' in data:
        fields['is_verified'] = data['isVerified']
    game = _services().lifecycle.update(get_session(), game_id, g.principal, fields)
    return _ok(game.to_dict())


@api.route('/api/games/<game_id>', methods=['DELETE'])
@require_login
def api_delete_game(game_id: str):
    _services().lifecycle.delete(get_session(), game_id, g.principal)
    web_logger.info('Game %s deleted by %s', game_id, g.principal.id)
    return _ok(message='Game deleted successfully')


@api.route('/api/games/<game_id>/download', methods=['GET'])
@optional_auth
def api_download_game(game_id: str):
    """Count a download and hand back where to fetch the file."""
    downloader = g.principal.id if g.principal else None
    ticket = _services().downloads.record(get_session(), game_id, downloader, request.remote_addr)
    return _ok(ticket.to_dict())


# -----------------------------------------------------------------------
# Reviews endpoints
# -----------------------------------------------------------------------

@api.route('/api/games/<game_id>/reviews', methods=['GET'])
def api_get_reviews(game_id: str):
    reviews = _services().reviews.get_all(get_session(), game_id)
    return _ok([r.to_dict() for r in reviews])


@api.route('/api/games/<game_id>/reviews', methods=['POST', 'PUT'])
@require_login
def api_save_review(game_id: str):
    """Add or update the caller's review.

    Body JSON: {"rating": 1-5, "comment": "optional text"}
    """
    data = request.get_json(silent=True) or {}
    reviews = _services().reviews.add_or_update(
        get_session(), game_id, g.principal.id,
        _coerce_rating(data.get('rating')), data.get('comment', ''))
    return _ok([r.to_dict() for r in reviews])


@api.route('/api/games/<game_id>/reviews', methods=['DELETE'])
@require_login
def api_delete_review(game_id: str):
    removed = _services().reviews.remove(get_session(), game_id, g.principal.id)
    if not removed:
        return _error('No review found', 404)
    return _ok()


# ===========================================================================================
# User Endpoints
# ===========================================================================================

@api.route('/api/users', methods=['GET'])
@require_admin
def api_list_users():
    args = request.args
    result = _services().users.list_users(
        get_session(), search=args.get('search'),
        page=args.get('page', 1, type=int), limit=args.get('limit', 20, type=int))
    return _ok([u.to_dict() for u in result.items], pagination=result.pagination())


@api.route('/api/users/<user_id>', methods=['GET'])
@optional_auth
def api_get_user(user_id: str):
    user = _services().users.get(get_session(), user_id)
    return _ok(_public_user(user, g.principal))


@api.route('/api/users/<user_id>/games', methods=['GET'])
def api_user_games(user_id: str):
    args = request.args
    result = _services().catalog.list(
        get_session(), owner_id=user_id,
        page=args.get('page', 1), page_size=args.get('limit'))
    return _ok([game.to_dict() for game in result.items], pagination=result.pagination())


@api.route('/api/users/<user_id>/stats', methods=['GET'])
def api_user_stats(user_id: str):
    return _ok(_services().users.stats(get_session(), user_id))


@api.route('/api/users/<user_id>', methods=['PUT'])
@require_admin
def api_admin_update_user(user_id: str):
    data = request.get_json(silent=True) or {}
    user = _services().users.admin_update(get_session(), user_id, data)
    return _ok(user.to_dict())


@api.route('/api/users/<user_id>', methods=['DELETE'])
@require_admin
def api_admin_delete_user(user_id: str):
    services = _services()
    removed = services.users.delete_user(get_session(), user_id, g.principal,
                                         services.lifecycle, services.reviews)
    web_logger.info('User %s deleted by %s (%d games)', user_id, g.principal.id, removed)
    return _ok(message='User and their games deleted successfully')


# ===========================================================================================
# Static assets / misc
# ===========================================================================================

@api.route('/uploads/<namespace>/<name>', methods=['GET'])
def serve_upload(namespace: str, name: str):
    """Static responder for stored assets."""
    directory = _services().assets.resolve(namespace, name)
    if directory is None:
        raise NotFound('File not found')
    return send_from_directory(directory, name, as_attachment=(namespace == 'games'))


@api.route('/api/health', methods=['GET'])
def api_health():
    return _ok(status='OK', timestamp=datetime.now(timezone.utc).isoformat())


@api.route('/api/openapi.json', methods=['GET'])
def api_openapi():
    return jsonify(build_spec(server_url=request.host_url.rstrip('/')))


# ===========================================================================================
# Application factory
# ===========================================================================================

def _register_error_handlers(app: Flask) -> None:

    @app.errorhandler(GameShareError)
    def handle_domain_error(exc: GameShareError):
        if exc.status_code >= 500:
            web_logger.error('%s on %s %s: %s', type(exc).__name__,
                             request.method, request.path, exc.__cause__ or exc)
        return _error(exc.message, exc.status_code)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(exc):
        return _error('File is too large', 413)

    @app.errorhandler(InternalServerError)
    def handle_internal_error(exc):
        original = getattr(exc, 'original_exception', None)
        web_logger.error('Unhandled error on %s %s', request.method, request.path,
                         exc_info=original or exc)
        return _error('Server error', 500)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        if exc.code == 404:
            return _error('Route not found', 404)
        return _error(exc.description or exc.name, exc.code or 500)


def create_app(overrides: Optional[Dict] = None, config_path: Optional[str] = 'config.json') -> Flask:
    """Build the Flask application.

    Creates the database tables and upload directories (both idempotent),
    then wires repositories and services.

    Args:
        overrides:   Config values taking precedence over file/environment.
        config_path: Optional JSON config file.
    """
    config = gameshare.load_config(config_path, overrides)
    gameshare.setup_logging(config.get('log_level', 'INFO'))

    engine = database.make_engine(config['database_url'])
    if not database.init_db(engine):
        web_logger.warning('Database initialization reported failure')
    session_factory = sessionmaker(autoflush=False, bind=engine)

    assets = gameshare.build_asset_repository(config)
    assets.ensure_directories()

    services = Services(
        session_factory=session_factory,
        assets=assets,
        users=UserService(database, config['secret_key'], config['token_max_age']),
        catalog=CatalogService(database),
        reviews=ReviewService(database),
        downloads=DownloadService(database),
        lifecycle=LifecycleService(database, assets),
    )

    app = Flask(__name__)
    app.config['SECRET_KEY'] = config['secret_key']
    app.config['MAX_CONTENT_LENGTH'] = config['max_image_size'] + config['max_file_size'] + MIB
    app.config['GAMESHARE'] = config
    app.extensions['gameshare'] = services
    app.register_blueprint(api)
    _register_error_handlers(app)

    @app.teardown_appcontext
    def close_session(exc):
        db = g.pop('db', None)
        if db is not None:
            db.close()

    web_logger.info('Game Share ready (db=%s, uploads=%s)', config['database_url'], config['upload_dir'])
    return app


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Game Share - web server')
    parser.add_argument('--config', '-c', default='config.json',
                        help='Path to config file (default: config.json)')
    parser.add_argument('--host', help='Host to bind (default from config)')
    parser.add_argument('--port', type=int, help='Port to listen on (default from config)')
    parser.add_argument('--debug', action='store_true', help='Run Flask in debug mode')
    args = parser.parse_args()

    overrides = {}
    if args.port:
        overrides['port'] = args.port
    if args.host:
        overrides['host'] = args.host
    app = create_app(overrides, config_path=args.config)
    config = app.config['GAMESHARE']

    try:
        os.makedirs('logs', exist_ok=True)
        fh = logging.FileHandler('logs/gameshare_web.log')
        fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
        logging.getLogger('gameshare').addHandler(fh)
    except OSError:
        web_logger.warning('Could not create log file handler')

    print(f"🎮 Game Share listening on http://{config['host']}:{config['port']}")
    app.run(host=config['host'], port=config['port'], debug=args.debug)


if __name__ == '__main__':
    main()
