#!/usr/bin/env python3
"""
Tests for the Flask REST API in gameshare_web.py.

Run with:
    python -m pytest tests/test_web.py
"""
import importlib
import io
import logging
import os
import shutil
import sys
import tempfile
import unittest
from urllib.parse import urlparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import gameshare
import gameshare_web
from openapi_spec import build_spec


def _make_app(tmp, **overrides):
    config = {
        'database_url': 'sqlite:///:memory:',
        'upload_dir': tmp,
        'image_dir': os.path.join(tmp, 'images'),
        'game_dir': os.path.join(tmp, 'games'),
        'base_url': 'http://testserver',
        'secret_key': 'test-secret',
        'log_level': 'WARNING',
    }
    config.update(overrides)
    app = gameshare_web.create_app(config, config_path=None)
    app.config['TESTING'] = True
    return app


class ApiTestCase(unittest.TestCase):

    overrides = {}

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.app = _make_app(self.tmp, **self.overrides)
        self.client = self.app.test_client()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    # -- helpers ----------------------------------------------------------

    def _register(self, name='Alice', email='alice@example.com', password='secret1'):
        resp = self.client.post('/api/auth/register',
                                json={'name': name, 'email': email, 'password': password})
        self.assertEqual(resp.status_code, 201, resp.get_json())
        return resp.get_json()['data']['token']

    def _auth(self, token):
        return {'Authorization': f'Bearer {token}'}

    def _upload(self, token, title='Pong Clone', image=True, game_file=True, **fields):
        data = {'title': title}
        data.update(fields)
        if image:
            data['image'] = (io.BytesIO(b'\x89PNG' + b'0' * 60), 'cover.png', 'image/png')
        if game_file:
            data['file'] = (io.BytesIO(b'PK\x03\x04' + b'0' * 124), 'game.zip')
        return self.client.post('/api/games', data=data, headers=self._auth(token),
                                content_type='multipart/form-data')

    def _stored_files(self):
        names = []
        for sub in ('images', 'games'):
            names.extend(os.listdir(os.path.join(self.tmp, sub)))
        return names


# ===========================================================================
# Auth
# ===========================================================================

class TestAuthEndpoints(ApiTestCase):

    def test_register_then_me(self):
        token = self._register()
        resp = self.client.get('/api/auth/me', headers=self._auth(token))
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()['data']
        self.assertEqual(data['email'], 'alice@example.com')
        self.assertNotIn('password', data)

    def test_login(self):
        self._register()
        resp = self.client.post('/api/auth/login',
                                json={'email': 'alice@example.com', 'password': 'secret1'})
        self.assertEqual(resp.status_code, 200)
        self.assertIn('token', resp.get_json()['data'])

    def test_login_wrong_password(self):
        self._register()
        resp = self.client.post('/api/auth/login',
                                json={'email': 'alice@example.com', 'password': 'nope123'})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.get_json()['error'], 'Invalid credentials')

    def test_register_validation(self):
        resp = self.client.post('/api/auth/register',
                                json={'name': 'A', 'email': 'bad', 'password': '1'})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.get_json()['success'])

    def test_me_requires_token(self):
        self.assertEqual(self.client.get('/api/auth/me').status_code, 401)
        resp = self.client.get('/api/auth/me', headers=self._auth('garbage'))
        self.assertEqual(resp.status_code, 401)


# ===========================================================================
# Games
# ===========================================================================

class TestGameEndpoints(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.token = self._register()

    def test_upload_and_list(self):
        resp = self._upload(self.token, category='Puzzle', tags='retro, arcade')
        self.assertEqual(resp.status_code, 201, resp.get_json())
        game = resp.get_json()['data']
        self.assertEqual(game['fileType'], '.zip')
        self.assertEqual(game['fileName'], 'game.zip')
        self.assertEqual(game['fileSize'], 128)
        self.assertEqual(game['tags'], ['retro', 'arcade'])
        self.assertEqual(game['uploaderName'], 'Alice')
        self.assertTrue(game['imageUrl'].startswith('http://testserver/uploads/images/'))

        listing = self.client.get('/api/games?category=Puzzle').get_json()
        self.assertEqual(listing['pagination']['total'], 1)
        self.assertEqual(listing['data'][0]['id'], game['id'])

    def test_upload_requires_login(self):
        resp = self.client.post('/api/games', data={'title': 'Pong Clone'},
                                content_type='multipart/form-data')
        self.assertEqual(resp.status_code, 401)

    def test_upload_without_file_leaves_nothing(self):
        resp = self._upload(self.token, game_file=False)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['error'], 'Both image and game file are required')
        self.assertEqual(self._stored_files(), [])

    def test_upload_bad_title(self):
        resp = self._upload(self.token, title='P')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self._stored_files(), [])

    def test_get_game_and_not_found(self):
        game_id = self._upload(self.token).get_json()['data']['id']
        resp = self.client.get(f'/api/games/{game_id}')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['data']['reviews'], [])
        self.assertEqual(self.client.get('/api/games/missing').status_code, 404)

    def test_download_flow(self):
        game_id = self._upload(self.token).get_json()['data']['id']
        resp = self.client.get(f'/api/games/{game_id}/download')
        self.assertEqual(resp.status_code, 200)
        ticket = resp.get_json()['data']
        self.assertEqual(ticket['fileName'], 'game.zip')

        fetched = self.client.get(urlparse(ticket['downloadUrl']).path)
        self.assertEqual(fetched.status_code, 200)
        self.assertTrue(fetched.data.startswith(b'PK\x03\x04'))
        fetched.close()

        game = self.client.get(f'/api/games/{game_id}').get_json()['data']
        self.assertEqual(game['downloads'], 1)

    def test_hidden_upload_names_not_served(self):
        self.assertEqual(self.client.get('/uploads/games/.upload-x.part').status_code, 404)
        self.assertEqual(self.client.get('/uploads/secrets/x.zip').status_code, 404)

    def test_reviews(self):
        game_id = self._upload(self.token).get_json()['data']['id']
        other = self._register('Bob', 'bob@example.com')
        resp = self.client.post(f'/api/games/{game_id}/reviews', json={'rating': 5, 'comment': 'Fun'},
                                headers=self._auth(self.token))
        self.assertEqual(resp.status_code, 200)
        self.client.post(f'/api/games/{game_id}/reviews', json={'rating': '3'},
                         headers=self._auth(other))
        game = self.client.get(f'/api/games/{game_id}').get_json()['data']
        self.assertEqual(game['averageRating'], 4.0)
        self.assertEqual(len(game['reviews']), 2)

        bad = self.client.post(f'/api/games/{game_id}/reviews', json={'rating': 9},
                               headers=self._auth(other))
        self.assertEqual(bad.status_code, 400)

        resp = self.client.delete(f'/api/games/{game_id}/reviews', headers=self._auth(other))
        self.assertEqual(resp.status_code, 200)
        resp = self.client.delete(f'/api/games/{game_id}/reviews', headers=self._auth(other))
        self.assertEqual(resp.status_code, 404)

    def test_whole_number_float_rating_accepted(self):
        game_id = self._upload(self.token).get_json()['data']['id']
        resp = self.client.post(f'/api/games/{game_id}/reviews', json={'rating': 4.0},
                                headers=self._auth(self.token))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['data'][0]['rating'], 4)
        resp = self.client.post(f'/api/games/{game_id}/reviews', json={'rating': 4.5},
                                headers=self._auth(self.token))
        self.assertEqual(resp.status_code, 400)

    def test_delete_permissions(self):
        game_id = self._upload(self.token).get_json()['data']['id']
        other = self._register('Bob', 'bob@example.com')
        resp = self.client.delete(f'/api/games/{game_id}', headers=self._auth(other))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.delete(f'/api/games/{game_id}', headers=self._auth(self.token))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get(f'/api/games/{game_id}').status_code, 404)
        self.assertEqual(self._stored_files(), [])

    def test_edit_game(self):
        game_id = self._upload(self.token).get_json()['data']['id']
        resp = self.client.put(f'/api/games/{game_id}', json={'title': 'Pong Deluxe'},
                               headers=self._auth(self.token))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['data']['title'], 'Pong Deluxe')
        resp = self.client.put(f'/api/games/{game_id}', json={'isActive': False},
                               headers=self._auth(self.token))
        self.assertEqual(resp.status_code, 403)

    def test_invalid_query(self):
        resp = self.client.get('/api/games?category=Bogus')
        self.assertEqual(resp.status_code, 400)
        resp = self.client.get('/api/games?sort=password')
        self.assertEqual(resp.status_code, 400)

    def test_user_profile_hides_email_from_others(self):
        me = self.client.get('/api/auth/me', headers=self._auth(self.token)).get_json()['data']
        public = self.client.get(f"/api/users/{me['id']}").get_json()['data']
        self.assertNotIn('email', public)
        stats = self.client.get(f"/api/users/{me['id']}/stats").get_json()['data']
        self.assertEqual(stats['games']['totalGames'], 0)


class TestUploadLimits(ApiTestCase):

    overrides = {'max_image_size': 16}

    def test_oversized_image_is_413(self):
        token = self._register()
        resp = self._upload(token)
        self.assertEqual(resp.status_code, 413)
        self.assertEqual(self._stored_files(), [])


# ===========================================================================
# Admin
# ===========================================================================

class TestAdminEndpoints(ApiTestCase):

    def setUp(self):
        super().setUp()
        services = self.app.extensions['gameshare']
        db = services.session_factory()
        try:
            services.users.create_admin(db, 'Admin', 'admin@example.com', 'adminpass')
        finally:
            db.close()
        resp = self.client.post('/api/auth/login',
                                json={'email': 'admin@example.com', 'password': 'adminpass'})
        self.admin_token = resp.get_json()['data']['token']
        self.token = self._register()

    def test_list_users_requires_admin(self):
        resp = self.client.get('/api/users', headers=self._auth(self.token))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.get('/api/users', headers=self._auth(self.admin_token))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['pagination']['total'], 2)

    def test_list_users_reports_clamped_limit(self):
        resp = self.client.get('/api/users?limit=-5', headers=self._auth(self.admin_token))
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body['pagination'], {'page': 1, 'limit': 1, 'total': 2, 'pages': 2})
        self.assertEqual(len(body['data']), 1)

    def test_admin_hides_game(self):
        game_id = self._upload(self.token).get_json()['data']['id']
        resp = self.client.put(f'/api/games/{game_id}', json={'isActive': False},
                               headers=self._auth(self.admin_token))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get(f'/api/games/{game_id}').status_code, 404)
        owner_view = self.client.get(f'/api/games/{game_id}', headers=self._auth(self.token))
        self.assertEqual(owner_view.status_code, 200)
        self.assertEqual(self.client.get('/api/games').get_json()['pagination']['total'], 0)

    def test_admin_deletes_user_and_games(self):
        self._upload(self.token)
        me = self.client.get('/api/auth/me', headers=self._auth(self.token)).get_json()['data']
        resp = self.client.delete(f"/api/users/{me['id']}", headers=self._auth(self.admin_token))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self._stored_files(), [])
        self.assertEqual(self.client.get(f"/api/users/{me['id']}").status_code, 404)


# ===========================================================================
# Misc / OpenAPI
# ===========================================================================

class TestMiscEndpoints(ApiTestCase):

    def test_health(self):
        resp = self.client.get('/api/health')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['status'], 'OK')

    def test_unknown_route(self):
        resp = self.client.get('/api/nothing-here')
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json()['error'], 'Route not found')

    def test_openapi_served(self):
        resp = self.client.get('/api/openapi.json')
        self.assertEqual(resp.status_code, 200)
        self.assertIn('/api/games', resp.get_json()['paths'])


class TestConfigAndLogging(unittest.TestCase):

    def test_import_does_not_attach_handlers(self):
        logger = logging.getLogger('gameshare')
        saved = logger.handlers[:]
        logger.handlers.clear()
        try:
            importlib.reload(gameshare)
            self.assertEqual(logger.handlers, [])
            gameshare.setup_logging('DEBUG')
            gameshare.setup_logging('DEBUG')
            self.assertEqual(len(logger.handlers), 1)
        finally:
            logger.handlers[:] = saved

    def test_overrides_and_derived_values(self):
        config = gameshare.load_config(None, {'upload_dir': '/srv/up', 'port': 5000,
                                              'secret_key': 'k'})
        self.assertEqual(config['image_dir'], os.path.join('/srv/up', 'images'))
        self.assertEqual(config['game_dir'], os.path.join('/srv/up', 'games'))
        self.assertEqual(config['base_url'], 'http://localhost:5000')
        self.assertEqual(config['secret_key'], 'k')


class TestOpenAPISpec(unittest.TestCase):

    def setUp(self):
        self.spec = build_spec()
        self.paths = self.spec['paths']

    def test_version(self):
        self.assertEqual(self.spec['openapi'], '3.0.3')

    def test_game_paths_present(self):
        for path in ('/api/games', '/api/games/{game_id}', '/api/games/{game_id}/download',
                     '/api/games/{game_id}/reviews', '/uploads/{namespace}/{name}'):
            self.assertIn(path, self.paths)

    def test_upload_is_multipart(self):
        body = self.paths['/api/games']['post']['requestBody']['content']
        self.assertIn('multipart/form-data', body)

    def test_bearer_scheme(self):
        scheme = self.spec['components']['securitySchemes']['bearerAuth']
        self.assertEqual(scheme['scheme'], 'bearer')


if __name__ == '__main__':
    unittest.main()
