"""Document upload, encrypted storage and signed download links."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from sqlalchemy import select, update

from nesema import document_store
from nesema.auth import JWT_ALGORITHM
from nesema.config import get_settings
from nesema.db.models import documents, patients
from nesema.encryption import decrypt_document, encrypt_document
from nesema.time_utils import utc_now

PDF_BYTES = b"%PDF-1.4 ferritin 42 ug/L"


@pytest.fixture
def uploaded(api_client, db_session, headers, practitioner_user, patient_user):
    db_session.execute(
        update(patients)
        .where(patients.c.id == patient_user["patient_id"])
        .values(practitioner_id=practitioner_user["practitioner_id"])
    )
    db_session.commit()
    resp = api_client.post(
        "/api/documents",
        data={"patient_id": patient_user["patient_id"], "title": "Blood panel", "document_type": "lab_result"},
        files={"file": ("bloods.pdf", PDF_BYTES, "application/pdf")},
        headers=headers(practitioner_user),
    )
    assert resp.status_code == 201
    return resp.json()


def _token_from(url):
    return parse_qs(urlparse(url).query)["token"][0]


def test_encrypt_round_trip():
    blob = encrypt_document(b"hello")
    assert blob != b"hello"
    assert decrypt_document(blob) == b"hello"
    with pytest.raises(ValueError):
        decrypt_document(b"not a fernet token")
    with pytest.raises(TypeError):
        encrypt_document("text")


def test_upload_stores_ciphertext(uploaded, db_session):
    assert uploaded["is_lab_result"] is True
    assert uploaded["size_bytes"] == len(PDF_BYTES)
    assert "storage_path" not in uploaded

    storage_path = db_session.execute(
        select(documents.c.storage_path).where(documents.c.id == uploaded["id"])
    ).scalar()
    on_disk = (get_settings().document_storage_dir / storage_path).read_bytes()
    assert PDF_BYTES not in on_disk
    assert document_store.load_document(storage_path) == PDF_BYTES


def test_patient_lists_own_documents(api_client, headers, uploaded, patient_user):
    listed = api_client.get("/api/documents", headers=headers(patient_user)).json()["documents"]
    assert [doc["title"] for doc in listed] == ["Blood panel"]


def test_signed_url_download(api_client, headers, uploaded, patient_user):
    resp = api_client.post(f"/api/documents/{uploaded['id']}/signed-url", headers=headers(patient_user))
    assert resp.status_code == 200
    body = resp.json()
    assert body["expires_in"] == document_store.SIGNED_URL_TTL_SECONDS

    download = api_client.get("/api/documents/download", params={"token": _token_from(body["url"])})
    assert download.status_code == 200
    assert download.content == PDF_BYTES
    assert download.headers["content-type"] == "application/pdf"
    assert download.headers["content-disposition"].startswith("inline")


def test_download_with_unicode_title(api_client, db_session, headers, uploaded, patient_user):
    db_session.execute(
        update(documents).where(documents.c.id == uploaded["id"]).values(title='Résultats — "血液"')
    )
    db_session.commit()
    resp = api_client.post(f"/api/documents/{uploaded['id']}/signed-url", headers=headers(patient_user))

    download = api_client.get("/api/documents/download", params={"token": _token_from(resp.json()["url"])})
    assert download.status_code == 200
    disposition = download.headers["content-disposition"]
    assert disposition.startswith('inline; filename="R_sultats _ ____"')
    assert "filename*=UTF-8''R%C3%A9sultats%20%E2%80%94%20%22%E8%A1%80%E6%B6%B2%22" in disposition


def test_download_rejects_bad_tokens(api_client, uploaded, patient_user):
    resp = api_client.get("/api/documents/download", params={"token": "garbage"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Invalid or expired link"

    # Access tokens are not download links.
    resp = api_client.get("/api/documents/download", params={"token": patient_user["token"]})
    assert resp.status_code == 401

    expired = jwt.encode(
        {"sub": uploaded["id"], "type": "document", "exp": utc_now() - timedelta(seconds=1)},
        get_settings().jwt_secret,
        algorithm=JWT_ALGORITHM,
    )
    assert api_client.get("/api/documents/download", params={"token": expired}).status_code == 401


def test_upload_validation(api_client, headers, patient_user):
    resp = api_client.post(
        "/api/documents",
        data={"patient_id": patient_user["patient_id"], "title": "Empty"},
        files={"file": ("empty.txt", b"", "text/plain")},
        headers=headers(patient_user),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "File is empty"

    resp = api_client.post(
        "/api/documents",
        data={"patient_id": patient_user["patient_id"], "title": "Scan", "document_type": "xray"},
        files={"file": ("scan.png", b"png", "image/png")},
        headers=headers(patient_user),
    )
    assert resp.status_code == 400


def test_other_practitioner_denied(api_client, headers, uploaded, make_user):
    other = make_user("practitioner", "Olu", "Ade")
    resp = api_client.post(f"/api/documents/{uploaded['id']}/signed-url", headers=headers(other))
    assert resp.status_code == 403


def test_admin_delete_removes_file(api_client, db_session, headers, uploaded, admin_user):
    storage_path = db_session.execute(
        select(documents.c.storage_path).where(documents.c.id == uploaded["id"])
    ).scalar()
    resp = api_client.post(f"/api/admin/documents/{uploaded['id']}/delete", headers=headers(admin_user))
    assert resp.json() == {"ok": True}
    assert not (get_settings().document_storage_dir / storage_path).exists()
    assert api_client.post(f"/api/admin/documents/{uploaded['id']}/signed-url", headers=headers(admin_user)).status_code == 404


def test_storage_paths_stay_inside_root():
    with pytest.raises(ValueError):
        document_store.load_document("../../etc/passwd")
