import pytest
from fastapi import HTTPException

from app.core.config import settings
from app.core.file_validation import SIGNATURES, check_signature, read_upload, sanitize_filename


class MockUploadFile:
    def __init__(self, filename, content):
        self.filename = filename
        self.content = content
        self.position = 0

    async def seek(self, pos):
        self.position = pos

    async def read(self, size=-1):
        if size < 0:
            size = len(self.content)
        data = self.content[self.position:self.position + size]
        self.position += len(data)
        return data


class TestSignatures:

    def test_valid_xlsx(self):
        check_signature("test.xlsx", SIGNATURES["xlsx"] + b"payload")

    def test_invalid_xlsx(self):
        with pytest.raises(HTTPException) as exc:
            check_signature("fake.xlsx", b"This is text not zip")
        assert exc.value.status_code == 400

    def test_valid_xls(self):
        check_signature("test.xls", SIGNATURES["xls"])

    def test_valid_csv(self):
        check_signature("data.csv", b"col1,col2\nval1,val2")

    def test_binary_csv(self):
        with pytest.raises(HTTPException):
            check_signature("bad.csv", b"\x00\x01\x02\x03")


class TestReadUpload:

    async def test_returns_sanitized_name_and_bytes(self):
        filename, content = await read_upload(MockUploadFile("../../etc/qcm bank.csv", b"question,reponse\n"))
        assert filename == "qcm_bank.csv"
        assert content == b"question,reponse\n"

    async def test_rejects_other_extensions(self):
        with pytest.raises(HTTPException) as exc:
            await read_upload(MockUploadFile("notes.pdf", b"%PDF"))
        assert exc.value.status_code == 400

    async def test_rejects_oversized(self, monkeypatch):
        monkeypatch.setattr(settings, "MAX_UPLOAD_SIZE_MB", 1)
        with pytest.raises(HTTPException) as exc:
            await read_upload(MockUploadFile("big.csv", b"a" * (1024 * 1024 + 1)))
        assert exc.value.status_code == 413

    async def test_rejects_empty(self):
        with pytest.raises(HTTPException):
            await read_upload(MockUploadFile("qcm.csv", b""))


def test_sanitize_filename():
    assert sanitize_filename("Banque QCM (v2).xlsx") == "Banque_QCM__v2_.xlsx"
    assert sanitize_filename("") == "upload.xlsx"
