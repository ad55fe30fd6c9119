"""
Tests for the CSV export
"""
import csv
import io
from datetime import date

from patlog import services
from patlog.csv_export import EXPORT_COLUMNS, export_filename, inspections_to_csv


def parse(text):
    return list(csv.DictReader(io.StringIO(text)))


class TestInspectionsToCsv:

    def test_header_only_when_empty(self):
        text = inspections_to_csv([], 'http://pat.test')
        assert next(csv.reader(io.StringIO(text))) == EXPORT_COLUMNS
        assert parse(text) == []

    def test_one_record_per_inspection(self, user, make_inspection):
        for n in range(3):
            make_inspection(user, serial=f'PAT-{n}')
        text = inspections_to_csv(services.list_inspections(user), 'http://pat.test')

        rows = list(csv.reader(io.StringIO(text)))
        assert len(rows) == 4
        assert [r['serial'] for r in parse(text)] == ['PAT-2', 'PAT-1', 'PAT-0']

    def test_values(self, user, make_inspection):
        make_inspection(user, rcd_trip_time='', manufacturer='', passed='0', fuse_rating='13', leakage='0.25')
        row = parse(inspections_to_csv(services.list_inspections(user), 'http://pat.test'))[0]

        assert row['image_url'] == ''
        assert row['rcd_trip_time'] == ''
        assert row['manufacturer'] == ''
        assert row['passed'] == 'false'
        assert row['visual_pass'] == 'true'
        assert row['fuse_rating'] == '13'
        assert row['leakage'] == '0.25'
        assert row['equipment_class'] == '1'
        assert row['inspection_date'] == '2024-03-01'

    def test_image_url(self, user, make_inspection, jpeg_upload):
        inspection = make_inspection(user, image=jpeg_upload)
        row = parse(inspections_to_csv([inspection], 'http://pat.test/'))[0]
        assert row['image_url'] == f'http://pat.test/blobs/{inspection.image.key}'

    def test_text_with_commas_quotes_and_newlines(self, user, make_inspection):
        comments = 'Cable, plug "worn"\nreplace soon'
        make_inspection(user, comments=comments, description='Kettle – 電気')
        row = parse(inspections_to_csv(services.list_inspections(user), 'http://pat.test'))[0]
        assert row['comments'] == comments
        assert row['description'] == 'Kettle – 電気'


class TestCsvEndpoint:

    def test_download(self, user_client, user, make_inspection):
        make_inspection(user)
        response = user_client.get('/inspections.csv')
        assert response.status_code == 200
        assert response.headers['content-type'].startswith('text/csv')
        assert 'attachment; filename="inspections-' in response.headers['content-disposition']
        assert len(parse(response.text)) == 1


def test_export_filename():
    assert export_filename(date(2024, 3, 1)) == 'inspections-2024-03-01.csv'
