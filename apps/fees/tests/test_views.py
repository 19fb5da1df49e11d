# fees/tests/test_views.py

import json
from io import BytesIO

import pytest
from django.urls import reverse
from openpyxl import load_workbook

from fees.models import FeeHead, FeeCollection

pytestmark = pytest.mark.django_db


def post_json(client, url, data):
    return client.post(url, data=json.dumps(data), content_type='application/json')


class TestAuthAndTenancy:

    def test_anonymous_request_redirects_to_login(self, client, branch):
        response = client.get(reverse('fees:fee_head_list'), {'branch_id': str(branch.pk)})
        assert response.status_code == 302

    def test_missing_branch_is_bad_request(self, api_client):
        response = api_client.get(reverse('fees:fee_head_list'))
        assert response.status_code == 400
        assert response.json()['code'] == 'BAD_REQUEST'

    def test_branch_header_is_accepted(self, api_client, branch, session, tuition):
        response = api_client.get(reverse('fees:fee_head_list'), HTTP_X_BRANCH_ID=str(branch.pk))
        assert response.status_code == 200
        assert [h['name'] for h in response.json()['fee_heads']] == ['Tuition']

    def test_session_of_other_branch_rejected(self, api_client, branch, other_session):
        response = api_client.get(
            reverse('fees:fee_head_list'), {'branch_id': str(branch.pk), 'session_id': str(other_session.pk)}
        )
        assert response.status_code == 400


class TestFeeHeadViews:

    def test_create_and_conflict(self, api_client, branch, session):
        url = reverse('fees:fee_head_create')
        response = post_json(api_client, url, {'branch_id': str(branch.pk), 'name': 'Lab'})
        assert response.status_code == 201
        assert response.json()['fee_head']['student_type'] == 'BOTH'

        response = post_json(api_client, url, {'branch_id': str(branch.pk), 'name': 'lab'})
        assert response.status_code == 409
        assert FeeHead.objects.filter(branch=branch).count() == 1

    def test_partial_edit_keeps_other_fields(self, api_client, branch, tuition):
        response = post_json(
            api_client, reverse('fees:fee_head_edit', args=[tuition.pk]),
            {'branch_id': str(branch.pk), 'description': 'Core'}
        )
        assert response.status_code == 200
        tuition.refresh_from_db()
        assert tuition.description == 'Core'
        assert tuition.name == 'Tuition'

    def test_head_of_other_branch_is_not_found(self, api_client, branch, other_branch, session):
        lab = FeeHead.objects.create(branch=branch, session=session, name='Lab')
        response = post_json(
            api_client, reverse('fees:fee_head_delete', args=[lab.pk]), {'branch_id': str(other_branch.pk)}
        )
        assert response.status_code == 404
        assert FeeHead.objects.filter(pk=lab.pk).exists()

    def test_invalid_json_body(self, api_client, branch):
        response = api_client.post(reverse('fees:fee_head_create'), data='{oops', content_type='application/json')
        assert response.status_code == 400


class TestCollectionViews:

    def test_create_collection_and_list_history(self, api_client, branch, student, slab, fee_term, tuition):
        response = post_json(api_client, reverse('fees:collection_create'), {
            'branch_id': str(branch.pk),
            'student_id': str(student.pk),
            'fee_term_id': str(fee_term.pk),
            'payment_mode': 'Cash',
            'items': [{'fee_head_id': str(tuition.pk), 'amount': '2500.00'}],
        })
        assert response.status_code == 201
        collection = response.json()['collection']
        assert collection['source'] == 'MANUAL'
        assert collection['items'][0]['original_amount'] == '10000.00'

        response = api_client.get(reverse('fees:collection_history'), {'branch_id': str(branch.pk)})
        body = response.json()
        assert body['pagination']['total_count'] == 1
        assert body['collections'][0]['receipt_number'] == collection['receipt_number']

    def test_items_are_required(self, api_client, branch, student, fee_term):
        response = post_json(api_client, reverse('fees:collection_create'), {
            'branch_id': str(branch.pk),
            'student_id': str(student.pk),
            'fee_term_id': str(fee_term.pk),
            'payment_mode': 'Cash',
            'items': [],
        })
        assert response.status_code == 400
        assert 'items' in response.json()['errors']
        assert FeeCollection.objects.count() == 0

    def test_export_workbook(self, api_client, branch, student, slab, fee_term, tuition):
        post_json(api_client, reverse('fees:collection_create'), {
            'branch_id': str(branch.pk),
            'student_id': str(student.pk),
            'fee_term_id': str(fee_term.pk),
            'payment_mode': 'Cash',
            'items': [{'fee_head_id': str(tuition.pk), 'amount': '100'}],
        })
        response = api_client.get(reverse('fees:collection_history_export'), {'branch_id': str(branch.pk)})
        assert response.status_code == 200
        assert response['Content-Type'].startswith('application/vnd.openxmlformats')

        ws = load_workbook(BytesIO(response.content)).active
        values = [cell.value for row in ws.iter_rows() for cell in row]
        assert student.admission_number in values

    def test_student_fee_details_summary(self, api_client, branch, student, slab):
        response = api_client.get(
            reverse('fees:student_fee_details', args=[student.pk]), {'branch_id': str(branch.pk)}
        )
        assert response.status_code == 200
        assert response.json()['summary']['outstanding_amount'] == '12000.00'
