"""
Tests for accounts: signup, admin rule, sessions and user management
"""
import os

import pytest

import database
from patlog import services, storage
from patlog.auth_manager import decode_session_token, create_session_token
from web_server import decode_flash

PASSWORD = 'secret123'


class TestSignup:

    def test_first_user_is_admin(self):
        first = services.signup('first@example.com', PASSWORD, PASSWORD)
        second = services.signup('second@example.com', PASSWORD, PASSWORD)
        assert first.admin is True
        assert second.admin is False

    def test_admin_flag_survives_deleting_everyone_else(self, admin_user, user):
        services.delete_user(user.id, admin_user)
        third = services.signup('third@example.com', PASSWORD, PASSWORD)
        assert third.admin is False

    def test_defaults(self):
        user = services.signup('Mixed.Case@Example.com', PASSWORD, PASSWORD)
        assert user.email == 'mixed.case@example.com'
        assert user.inspection_limit == 10
        assert user.password_digest.startswith('$argon2')

    def test_duplicate_email_is_case_insensitive(self, user):
        with pytest.raises(services.RecordInvalid) as exc_info:
            services.signup(user.email.upper(), PASSWORD, PASSWORD)
        assert exc_info.value.errors['email'] == ['has already been taken']

    @pytest.mark.parametrize('email', ['', 'not-an-email', 'a b@example.com'])
    def test_invalid_email(self, email):
        with pytest.raises(services.RecordInvalid) as exc_info:
            services.signup(email, PASSWORD, PASSWORD)
        assert 'email' in exc_info.value.errors

    def test_password_rules(self):
        with pytest.raises(services.RecordInvalid) as exc_info:
            services.signup('short@example.com', '12345', '12345')
        assert exc_info.value.errors['password'] == ['is too short (minimum is 6 characters)']

        with pytest.raises(services.RecordInvalid) as exc_info:
            services.signup('mismatch@example.com', PASSWORD, 'different')
        assert exc_info.value.errors['password_confirmation'] == ["doesn't match Password"]

    def test_signup_endpoint_logs_in(self, client):
        response = client.post('/signup', data={'email': 'new@example.com', 'password': PASSWORD,
                                                'password_confirmation': PASSWORD}, follow_redirects=False)
        assert response.status_code == 303
        assert decode_flash(response.cookies.get('flash'))['message'] == 'Account created'
        assert client.get('/').json()['user']['email'] == 'new@example.com'

    def test_signup_endpoint_validation(self, client):
        response = client.post('/signup', data={'email': 'bad', 'password': '1'})
        assert response.status_code == 422
        assert set(response.json()['errors']) == {'email', 'password'}


class TestSessions:

    def test_login_and_logout(self, client, user, log_in):
        log_in(user.email)
        home = client.get('/')
        assert home.status_code == 200
        assert home.json()['inspection_count'] == '0 / 10 inspections'

        response = client.delete('/logout', follow_redirects=False)
        assert response.status_code == 303
        assert client.get('/', follow_redirects=False).headers['location'] == '/login'

    def test_wrong_password(self, client, user):
        response = client.post('/login', data={'email': user.email, 'password': 'wrong-password'})
        assert response.status_code == 401
        assert response.json()['detail'] == 'Invalid email/password combination'

    def test_email_login_is_case_insensitive(self, user):
        assert services.authenticate(user.email.upper(), PASSWORD).id == user.id

    def test_bearer_token(self, client, user, make_inspection):
        make_inspection(user)
        token = client.post('/token', data={'username': user.email, 'password': PASSWORD}).json()['access_token']
        assert decode_session_token(token) == user.id

        response = client.get('/inspections', headers={'Authorization': f'Bearer {token}'})
        assert response.status_code == 200
        assert len(response.json()['inspections']) == 1

    def test_garbage_token(self, client):
        assert decode_session_token('not-a-token') is None
        response = client.get('/inspections', headers={'Authorization': 'Bearer not-a-token'},
                              follow_redirects=False)
        assert response.status_code == 303

    def test_token_for_deleted_user(self, client, admin_user, user):
        token = create_session_token(user.id)
        services.delete_user(user.id, admin_user)
        response = client.get('/', headers={'Authorization': f'Bearer {token}'}, follow_redirects=False)
        assert response.headers['location'] == '/login'


class TestUserAdministration:

    def test_admin_lists_users(self, admin_client, user):
        emails = [u['email'] for u in admin_client.get('/users').json()]
        assert emails == ['admin@example.com', 'inspector@example.com']
        assert 'password_digest' not in admin_client.get('/users').json()[0]

    def test_non_admin_refused(self, user_client):
        response = user_client.get('/users', follow_redirects=False)
        assert response.status_code == 303
        assert response.headers['location'] == '/'
        assert decode_flash(response.cookies.get('flash'))['message'] == 'You are not authorized to access this page'

    def test_admin_updates_limit(self, admin_client, user):
        response = admin_client.patch(f'/users/{user.id}', data={'inspection_limit': '25'}, follow_redirects=False)
        assert response.status_code == 303
        assert services.get_user(user.id).inspection_limit == 25

    def test_negative_limit_rejected(self, admin_client, user):
        response = admin_client.patch(f'/users/{user.id}', data={'inspection_limit': '-1'})
        assert response.status_code == 422
        assert response.json()['errors']['inspection_limit'] == ['must be greater than or equal to 0']

    def test_admin_cannot_delete_self(self, admin_client, admin_user):
        response = admin_client.delete(f'/users/{admin_user.id}', follow_redirects=False)
        assert response.status_code == 303
        assert services.get_user(admin_user.id)

    def test_delete_cascades_and_purges_images(self, admin_client, user, make_inspection, jpeg_upload):
        inspection = make_inspection(user, image=jpeg_upload)
        blob_path = storage._blob_path(inspection.image.key)
        assert os.path.exists(blob_path)

        response = admin_client.delete(f'/users/{user.id}', follow_redirects=False)

        assert response.status_code == 303
        assert database.get_user_by_id(user.id) is None
        assert database.get_inspection_by_id(inspection.id) is None
        assert database.get_blob_by_id(inspection.image_blob_id) is None
        assert not os.path.exists(blob_path)

    def test_impersonate(self, admin_client, user):
        response = admin_client.post(f'/users/{user.id}/impersonate', follow_redirects=False)
        assert response.status_code == 303
        assert admin_client.get('/').json()['user']['email'] == user.email

    def test_image_listings(self, admin_client, user, make_inspection, jpeg_upload, image_bytes):
        inspection = make_inspection(user, image=jpeg_upload)
        orphan = storage.store_blob(image_bytes(), 'orphan.jpg', 'image/jpeg')

        attached = admin_client.get('/images/all').json()['images']
        assert [row['inspection_id'] for row in attached] == [inspection.id]

        orphaned = admin_client.get('/images/orphaned').json()['images']
        assert [row['key'] for row in orphaned] == [orphan.key]


class TestPasswordChange:

    def test_change_own_password(self, user_client, user):
        response = user_client.patch(f'/users/{user.id}/update_password', data={
            'current_password': PASSWORD, 'password': 'newsecret', 'password_confirmation': 'newsecret',
        }, follow_redirects=False)
        assert response.status_code == 303
        assert services.authenticate(user.email, 'newsecret')
        assert services.authenticate(user.email, PASSWORD) is None

    def test_wrong_current_password(self, user_client, user):
        response = user_client.patch(f'/users/{user.id}/update_password', data={
            'current_password': 'nope', 'password': 'newsecret', 'password_confirmation': 'newsecret',
        })
        assert response.status_code == 422
        assert response.json()['errors'] == {'current_password': ['is incorrect']}

    def test_cannot_change_someone_else(self, user_client, admin_user):
        response = user_client.get(f'/users/{admin_user.id}/change_password', follow_redirects=False)
        assert response.status_code == 303
        assert decode_flash(response.cookies.get('flash'))['message'] == 'You can only change your own password'
