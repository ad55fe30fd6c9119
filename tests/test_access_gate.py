"""
Tests for the inspection access gate: login, ownership and quota
"""
import pytest

import database
from patlog import services
from web_server import decode_flash


def flash_of(response):
    return decode_flash(response.cookies.get('flash'))


class TestLoginRequired:

    def test_anonymous_redirected_to_login(self, client):
        response = client.get('/inspections', follow_redirects=False)
        assert response.status_code == 303
        assert response.headers['location'] == '/login'
        assert flash_of(response)['message'] == 'Please log in to access this page'

    def test_flash_is_shown_once(self, client):
        client.get('/inspections', follow_redirects=False)
        first = client.get('/login')
        assert first.json()['flash']['message'] == 'Please log in to access this page'
        second = client.get('/login')
        assert second.json()['flash'] is None


class TestOwnership:

    def test_owner_can_view(self, user_client, user, make_inspection):
        inspection = make_inspection(user)
        response = user_client.get(f'/inspections/{inspection.id}')
        assert response.status_code == 200
        assert response.json()['inspection']['serial'] == 'PAT-0001'

    def test_non_owner_redirected(self, client, log_in, user, other_user, make_inspection):
        inspection = make_inspection(user)
        log_in(other_user.email)

        for method, url in [('get', f'/inspections/{inspection.id}'),
                            ('get', f'/inspections/{inspection.id}/edit'),
                            ('delete', f'/inspections/{inspection.id}')]:
            response = getattr(client, method)(url, follow_redirects=False)
            assert response.status_code == 303
            assert response.headers['location'] == '/inspections'
            assert flash_of(response)['message'] == 'Access denied'

        assert services.get_inspection(inspection.id).serial == 'PAT-0001'

    def test_non_owner_update_leaves_record_unchanged(self, client, log_in, user, other_user, make_inspection):
        inspection = make_inspection(user)
        log_in(other_user.email)

        response = client.patch(f'/inspections/{inspection.id}', data={'serial': 'HIJACKED'},
                                follow_redirects=False)

        assert response.status_code == 303
        assert response.headers['location'] == '/inspections'
        assert services.get_inspection(inspection.id).serial == 'PAT-0001'

    def test_missing_record(self, user_client):
        response = user_client.get('/inspections/doesnotexist', follow_redirects=False)
        assert response.status_code == 303
        assert response.headers['location'] == '/inspections'
        assert flash_of(response)['message'] == 'Inspection record not found'

    def test_listing_only_shows_own_records(self, client, log_in, user, other_user, make_inspection):
        make_inspection(user, serial='MINE')
        make_inspection(other_user, serial='THEIRS')
        log_in(user.email)

        serials = [i['serial'] for i in client.get('/inspections').json()['inspections']]
        assert serials == ['MINE']

    def test_certificate_is_public(self, client, user, make_inspection):
        inspection = make_inspection(user)
        response = client.get(f'/inspections/{inspection.id}/certificate')
        assert response.status_code == 200
        assert response.headers['content-type'] == 'application/pdf'


class TestQuota:

    def _set_limit(self, user, limit):
        database.update_user(user.id, {'inspection_limit': limit}, database._now_iso())
        return services.get_user(user.id)

    def test_boundary(self, user, make_inspection):
        user = self._set_limit(user, 2)
        make_inspection(user, serial='ONE')
        assert services.can_create_inspection(user)
        make_inspection(user, serial='TWO')
        assert not services.can_create_inspection(user)

        with pytest.raises(services.QuotaExceeded, match='inspection limit of 2'):
            make_inspection(user, serial='THREE')
        assert database.count_inspections_for_user(user.id) == 2

    def test_zero_limit_blocks_new_form(self, user_client, user):
        self._set_limit(user, 0)
        response = user_client.get('/inspections/new', follow_redirects=False)
        assert response.status_code == 303
        assert response.headers['location'] == '/inspections'
        assert 'inspection limit of 0' in flash_of(response)['message']

    def test_refused_before_upload_is_stored(self, user_client, user, inspection_form, image_bytes):
        self._set_limit(user, 0)
        response = user_client.post(
            '/inspections',
            data=inspection_form(),
            files={'image': ('photo.jpg', image_bytes(), 'image/jpeg')},
            follow_redirects=False,
        )
        assert response.status_code == 303
        assert database.count_inspections_for_user(user.id) == 0
        assert database.get_orphaned_blobs() == []

    def test_count_summary(self, user, make_inspection):
        make_inspection(user)
        assert services.format_inspection_count(services.get_user(user.id)) == '1 / 10 inspections'
        user = self._set_limit(user, 0)
        assert services.format_inspection_count(user) == '1 inspections'
