from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import func, select

from printchain.config import settings
from printchain.db import get_db
from printchain.errors import ExtractionTimeout
from printchain.main import app
from printchain.models import Job, PurchaseOrder, TaskKind, WorkTask
from support import CUSTOMER_ID, SIZE_NAME, FakeExtractor, extracted, make_session_factory, seed_reference_data

PRINCIPALS = {
    'broker-token': {'username': 'broker', 'role': 'BROKER', 'company_id': 'impact-direct'},
    'admin-token': {'username': 'admin', 'role': 'ADMIN'},
    'auditor-token': {'username': 'auditor', 'role': 'AUDITOR'},
}
SENDER = 'Steve Gustafson <steve.gustafson@bgeltd.com>'


def _auth(token: str) -> dict:
    return {'Authorization': f'Bearer {token}'}


class RouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.Session = make_session_factory()
        with self.Session() as db:
            seed_reference_data(db)

        def override_get_db():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        principals = patch.dict(settings.api_principals, PRINCIPALS, clear=True)
        principals.start()
        self.addCleanup(principals.stop)
        secret = patch.object(settings, 'webhook_secret', None)
        secret.start()
        self.addCleanup(secret.stop)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def _count(self, model) -> int:
        with self.Session() as db:
            return db.execute(select(func.count()).select_from(model)).scalar_one()

    def _create_job(self) -> dict:
        response = self.client.post(
            '/jobs',
            json={'customer_id': CUSTOMER_ID, 'size_name': SIZE_NAME, 'quantity': 10000, 'mode': 'NORMAL'},
            headers=_auth('broker-token'),
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_requests_without_token_are_rejected(self) -> None:
        response = self.client.get('/jobs/1/financials')
        self.assertEqual(response.status_code, 401)

    def test_deactivated_token_is_forbidden(self) -> None:
        with patch.dict(
            settings.api_principals,
            {'retired-token': {'username': 'old-broker', 'role': 'BROKER', 'active': 'false'}},
        ):
            response = self.client.get('/rate-card', headers=_auth('retired-token'))
        self.assertEqual(response.status_code, 403)

    def test_health_is_public(self) -> None:
        self.assertEqual(self.client.get('/health').json(), {'status': 'ok'})

    def test_create_job_returns_financials(self) -> None:
        body = self._create_job()
        self.assertEqual(body['allocation_mode'], 'NORMAL')
        self.assertEqual(float(body['customer_total']), 675.60)
        self.assertEqual(float(body['broker_margin_total']), 71.35)
        self.assertEqual(self._count(Job), 1)

    def test_create_job_with_unknown_size_persists_nothing(self) -> None:
        response = self.client.post(
            '/jobs',
            json={'customer_id': CUSTOMER_ID, 'size_name': 'Unknown', 'quantity': 10000},
            headers=_auth('broker-token'),
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn('Unknown size', response.json()['detail'])
        self.assertEqual(self._count(Job), 0)

    def test_reprice_requires_admin(self) -> None:
        job = self._create_job()
        response = self.client.post(
            f"/jobs/{job['id']}/reprice",
            json={'customer_cpm': '70.00'},
            headers=_auth('broker-token'),
        )
        self.assertEqual(response.status_code, 403)

        response = self.client.post(
            f"/jobs/{job['id']}/reprice",
            json={'customer_cpm': '70.00'},
            headers=_auth('admin-token'),
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['is_custom_pricing'])

    def test_invoice_chain_endpoint(self) -> None:
        job = self._create_job()
        response = self.client.post(f"/jobs/{job['id']}/invoices", headers=_auth('broker-token'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()['invoices']), 3)
        self.assertEqual(self._count(PurchaseOrder), 2)

    def test_job_invoices_listing(self) -> None:
        job = self._create_job()
        self.assertEqual(self.client.get(f"/jobs/{job['id']}/invoices", headers=_auth('broker-token')).json()['invoices'], [])

        self.client.post(f"/jobs/{job['id']}/invoices", headers=_auth('broker-token'))
        listed = self.client.get(f"/jobs/{job['id']}/invoices", headers=_auth('broker-token')).json()['invoices']
        self.assertEqual([row['to_company_id'] for row in listed], ['bradford', 'impact-direct', CUSTOMER_ID])

    def test_rate_card_lists_active_sizes(self) -> None:
        rows = self.client.get('/rate-card', headers=_auth('broker-token')).json()
        self.assertIn(SIZE_NAME, [row['size_name'] for row in rows])

    def test_webhook_secret_is_enforced_when_configured(self) -> None:
        payload = {'componentId': 'CMP-1', 'estimateNumber': 'E-1', 'amount': '99.50'}
        with patch.object(settings, 'webhook_secret', 'shh'):
            denied = self.client.post('/webhooks/intermediary-po', json=payload)
            allowed = self.client.post('/webhooks/intermediary-po', json=payload, headers={'X-Webhook-Secret': 'shh'})
            by_query = self.client.post('/webhooks/intermediary-po?token=shh', json=payload)

        self.assertEqual(denied.status_code, 401)
        self.assertEqual(allowed.json()['action'], 'created')
        self.assertEqual(by_query.json()['action'], 'duplicate')
        self.assertEqual(self._count(PurchaseOrder), 1)

    def test_inbound_email_from_unknown_sender_is_ignored(self) -> None:
        response = self.client.post(
            '/webhooks/inbound-email',
            data={'from': 'Fake Steve <attacker@evil.com> steve.gustafson@bgeltd.com', 'subject': 'JJSG PO'},
            files={'attachment1': ('po.pdf', b'%PDF-1.4', 'application/pdf')},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['action'], 'ignored')
        self.assertEqual(response.json()['reason'], 'invalid_sender')
        self.assertEqual(self._count(PurchaseOrder), 0)

    def test_inbound_email_creates_po(self) -> None:
        with patch('printchain.services.webhook_service.get_po_extractor', return_value=FakeExtractor(extracted())):
            response = self.client.post(
                '/webhooks/inbound-email',
                data={'from': SENDER, 'subject': 'New PO JJSG'},
                files={'attachment1': ('po.pdf', b'%PDF-1.4', 'application/pdf')},
            )
        body = response.json()
        self.assertEqual(body['action'], 'created')
        self.assertEqual(body['purchase_order']['external_ref'], 'Bradford-JJSG-45120')

    def test_inbound_email_extraction_timeout_is_queued(self) -> None:
        extractor = FakeExtractor(error=ExtractionTimeout('slow'))
        with patch('printchain.services.webhook_service.get_po_extractor', return_value=extractor):
            response = self.client.post(
                '/webhooks/inbound-email',
                data={'from': SENDER, 'subject': 'New PO JJSG'},
                files={'attachment1': ('po.pdf', b'%PDF-1.4', 'application/pdf')},
            )
        self.assertEqual(response.json()['action'], 'queued')
        with self.Session() as db:
            task = db.execute(select(WorkTask).where(WorkTask.kind == TaskKind.PROCESS_WEBHOOK)).scalar_one()
            self.assertEqual(task.payload['event_id'], response.json()['event_id'])

    def test_webhook_events_listing_requires_role(self) -> None:
        self.client.post('/webhooks/intermediary-po', json={'componentId': 'C', 'estimateNumber': 'E', 'amount': '5'})
        self.assertEqual(self.client.get('/webhook-events', headers=_auth('broker-token')).status_code, 403)
        events = self.client.get('/webhook-events', headers=_auth('auditor-token')).json()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]['status'], 'CREATED')

    def test_reconciliation_csv_export(self) -> None:
        job = self._create_job()
        self.client.post(f"/jobs/{job['id']}/invoices", headers=_auth('broker-token'))

        response = self.client.get('/reconciliation/report.csv', headers=_auth('auditor-token'))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers['content-type'].startswith('text/csv'))
        lines = response.text.strip().splitlines()
        self.assertTrue(lines[0].startswith('Job No,PO Origin,PO Target'))
        self.assertEqual(len(lines), 3)

    def test_repair_endpoint_reports_counts(self) -> None:
        job = self._create_job()
        self.client.post(f"/jobs/{job['id']}/invoices", headers=_auth('broker-token'))
        response = self.client.post('/reconciliation/repair', json={}, headers=_auth('admin-token'))
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['mismatches'], 0)
        self.assertEqual(body['repaired'], 0)
        self.assertEqual(body['percent_in_sync'], '100.00')


if __name__ == '__main__':
    unittest.main()
