import uuid
from datetime import timedelta

from mocks import T0, make_document


def _classification_rule(**overrides):
    data = {
        "name": "Factures fournisseurs",
        "priority": 1,
        "conditions": [
            {"criteria": "filename", "operator": "contains", "value": "facture"},
            {"criteria": "extension", "operator": "equals", "value": "pdf"},
        ],
        "condition_logic": "and",
        "actions": [
            {"action": "set_type", "value": "invoice"},
            {"action": "set_retention", "value": "FIS-01"},
        ],
    }
    data.update(overrides)
    return data


def _archive_rule(**overrides):
    data = {
        "name": "Archive old invoices",
        "source_folder": "Comptabilité",
        "source_age_days": 365,
        "target_folder": "Archives/Comptabilité",
        "run_frequency": "monthly",
    }
    data.update(overrides)
    return data


class TestClassificationRuleEndpoints:
    def test_create(self, client, seeded_categories):
        resp = client.post("/ecm/classification-rules", json=_classification_rule())
        assert resp.status_code == 201
        data = resp.json()
        assert data["condition_logic"] == "and"
        assert data["documents_classified"] == 0

    def test_create_unknown_operator(self, client, seeded_categories):
        payload = _classification_rule(
            conditions=[{"criteria": "filename", "operator": "like", "value": "x"}]
        )
        resp = client.post("/ecm/classification-rules", json=payload)
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_definition"

    def test_create_unknown_retention_code(self, client):
        resp = client.post("/ecm/classification-rules", json=_classification_rule())
        assert resp.status_code == 400
        assert resp.json()["details"] == {"field": "actions"}

    def test_get_not_found(self, client):
        resp = client.get(f"/ecm/classification-rules/{uuid.uuid4()}")
        assert resp.status_code == 404

    def test_list(self, client, seeded_categories):
        client.post("/ecm/classification-rules", json=_classification_rule())
        resp = client.get("/ecm/classification-rules")
        assert resp.status_code == 200
        assert resp.json()["count"] == 1

    def test_update(self, client, seeded_categories):
        created = client.post(
            "/ecm/classification-rules", json=_classification_rule()
        ).json()
        resp = client.patch(
            f"/ecm/classification-rules/{created['id']}",
            json={"condition_logic": "or", "priority": 5},
        )
        assert resp.status_code == 200
        assert resp.json()["condition_logic"] == "or"
        assert resp.json()["priority"] == 5

    def test_delete(self, client, seeded_categories):
        created = client.post(
            "/ecm/classification-rules", json=_classification_rule()
        ).json()
        resp = client.delete(f"/ecm/classification-rules/{created['id']}")
        assert resp.status_code == 204
        resp = client.get("/ecm/classification-rules")
        assert resp.json()["count"] == 0

    def test_run(self, client, collaborators, seeded_categories):
        invoice = collaborators.store.add(
            make_document(filename="Facture_Janvier.PDF", retention_category=None)
        )
        collaborators.store.add(make_document(filename="notes.txt"))
        created = client.post(
            "/ecm/classification-rules", json=_classification_rule()
        ).json()

        resp = client.post(
            f"/ecm/classification-rules/{created['id']}/run",
            params={"now": "2024-01-01T09:00:00Z"},
        )

        assert resp.status_code == 200
        assert resp.json() == {"rule_id": created["id"], "documents_changed": 1}
        assert collaborators.store.get(invoice.id).document_type == "invoice"

    def test_run_scoped_to_documents(self, client, collaborators, seeded_categories):
        collaborators.store.add(make_document(filename="facture_a.pdf"))
        created = client.post(
            "/ecm/classification-rules", json=_classification_rule()
        ).json()
        resp = client.post(
            f"/ecm/classification-rules/{created['id']}/run",
            json={"document_ids": [str(uuid.uuid4())]},
        )
        assert resp.status_code == 200
        assert resp.json()["documents_changed"] == 0


class TestClassifyDocumentEndpoint:
    def test_classify(self, client, collaborators, seeded_categories):
        document = collaborators.store.add(
            make_document(filename="Facture_Janvier.PDF", retention_category=None)
        )
        client.post("/ecm/classification-rules", json=_classification_rule())

        resp = client.post(
            f"/ecm/documents/{document.id}/classify", json={"on_upload": True}
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["document_id"] == document.id
        assert data["changed"] is True
        assert [a["action"] for a in data["applied"]] == ["set_type", "set_retention"]
        assert collaborators.store.get(document.id).retention_category == "FIS-01"

    def test_classify_unknown_document(self, client):
        resp = client.post(f"/ecm/documents/{uuid.uuid4()}/classify")
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"


class TestAutoArchiveRuleEndpoints:
    def test_create(self, client):
        resp = client.post("/ecm/auto-archive-rules", json=_archive_rule())
        assert resp.status_code == 201
        data = resp.json()
        assert data["run_frequency"] == "monthly"
        assert data["next_run_at"] is None

    def test_create_without_effect(self, client):
        resp = client.post(
            "/ecm/auto-archive-rules", json=_archive_rule(target_folder=None)
        )
        assert resp.status_code == 400

    def test_list_by_frequency(self, client):
        client.post("/ecm/auto-archive-rules", json=_archive_rule())
        client.post(
            "/ecm/auto-archive-rules",
            json=_archive_rule(name="Daily", run_frequency="daily"),
        )
        resp = client.get("/ecm/auto-archive-rules", params={"run_frequency": "daily"})
        assert resp.status_code == 200
        assert [r["name"] for r in resp.json()["items"]] == ["Daily"]

    def test_update_and_delete(self, client):
        created = client.post("/ecm/auto-archive-rules", json=_archive_rule()).json()
        resp = client.patch(
            f"/ecm/auto-archive-rules/{created['id']}", json={"target_locked": True}
        )
        assert resp.status_code == 200
        assert resp.json()["target_locked"] is True
        resp = client.delete(f"/ecm/auto-archive-rules/{created['id']}")
        assert resp.status_code == 204

    def test_run(self, client, collaborators):
        old = collaborators.store.add(
            make_document(
                folder="Comptabilité",
                created_at=T0 - timedelta(days=400),
                uploaded_at=T0 - timedelta(days=400),
            )
        )
        collaborators.store.add(make_document(folder="Comptabilité"))
        created = client.post("/ecm/auto-archive-rules", json=_archive_rule()).json()

        resp = client.post(
            f"/ecm/auto-archive-rules/{created['id']}/run",
            params={"now": "2024-01-01T09:00:00Z"},
        )

        assert resp.status_code == 200
        assert resp.json() == {"rule_id": created["id"], "documents_processed": 1}
        assert collaborators.store.get(old.id).folder == "Archives/Comptabilité"
        rule = client.get(f"/ecm/auto-archive-rules/{created['id']}").json()
        assert rule["documents_processed"] == 1
        assert rule["next_run_at"] is not None
