"""Unit tests for StorageService (MinIO/S3-compatible storage).

Tests storage operations with mocked MinIO client.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from minio.error import S3Error

from services.shared.config import Settings
from services.storage.service import StorageService, blob_name_for


@pytest.fixture
def storage_settings() -> Settings:
    """Create test settings with storage credentials."""
    return Settings(
        storage_endpoint="localhost:9000",
        storage_access_key="test-access-key",
        storage_secret_key="test-secret-key",
        storage_bucket="test-invoices",
        storage_secure=False,
        storage_url_expiry_seconds=600,
    )


@pytest.fixture
def mock_minio_client() -> MagicMock:
    """Create mock MinIO client."""
    mock = MagicMock()
    mock.bucket_exists.return_value = True
    mock.list_buckets.return_value = []
    return mock


def s3_error(code: str, resource: str) -> S3Error:
    return S3Error(
        code=code,
        message="Request failed",
        resource=resource,
        request_id="12345",
        host_id="host",
        response=MagicMock(status=404, data=b""),
    )


class TestBlobName:
    """Test object naming."""

    def test_uses_file_extension(self) -> None:
        assert blob_name_for("doc-1", "factura.PNG") == "doc-1.PNG"

    def test_defaults_to_pdf(self) -> None:
        assert blob_name_for("doc-1", "scan") == "doc-1.pdf"
        assert blob_name_for("doc-1", "") == "doc-1.pdf"


class TestStorageServiceAvailability:
    """Test storage service availability checks."""

    def test_is_available_when_configured(self, storage_settings: Settings) -> None:
        assert StorageService(storage_settings).is_available() is True

    def test_is_not_available_without_credentials(self) -> None:
        settings = Settings(storage_access_key="", storage_secret_key="secret")
        assert StorageService(settings).is_available() is False

    def test_get_client_without_credentials_raises(self) -> None:
        service = StorageService(Settings(storage_access_key="", storage_secret_key=""))
        with pytest.raises(ValueError, match="APP_STORAGE_ACCESS_KEY"):
            service._get_client()


class TestStorageServiceHealthCheck:
    """Test storage service health checks."""

    def test_health_check_success(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        service = StorageService(storage_settings)

        with patch.object(service, "_get_client", return_value=mock_minio_client):
            assert service.health_check() is True

        mock_minio_client.list_buckets.assert_called_once()

    def test_health_check_failure(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        mock_minio_client.list_buckets.side_effect = Exception("Connection refused")
        service = StorageService(storage_settings)

        with patch.object(service, "_get_client", return_value=mock_minio_client):
            assert service.health_check() is False


class TestStorageServiceUpload:
    """Test document uploads."""

    def test_upload_document_success(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        mock_minio_client.put_object.return_value = MagicMock(etag="abc123")
        service = StorageService(storage_settings)

        with patch.object(service, "_get_client", return_value=mock_minio_client):
            result = service.upload_document("doc-1", b"%PDF-1.7", "application/pdf", "inv.pdf")

        assert result.success is True
        assert result.object_name == "doc-1.pdf"
        assert result.bucket == "test-invoices"
        assert result.etag == "abc123"
        assert result.size == 8

        kwargs = mock_minio_client.put_object.call_args.kwargs
        assert kwargs["content_type"] == "application/pdf"
        assert kwargs["metadata"]["original-filename"] == "inv.pdf"
        assert kwargs["metadata"]["document-id"] == "doc-1"

    def test_upload_guesses_content_type(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        mock_minio_client.put_object.return_value = MagicMock(etag="e")
        service = StorageService(storage_settings)

        with patch.object(service, "_get_client", return_value=mock_minio_client):
            service.upload_document("doc-1", b"\x89PNG", None, "scan.png")

        assert mock_minio_client.put_object.call_args.kwargs["content_type"] == "image/png"

    def test_upload_creates_missing_bucket_once(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        mock_minio_client.bucket_exists.return_value = False
        mock_minio_client.put_object.return_value = MagicMock(etag="e")
        service = StorageService(storage_settings)

        with patch.object(service, "_get_client", return_value=mock_minio_client):
            service.upload_document("doc-1", b"a", "application/pdf", "a.pdf")
            service.upload_document("doc-2", b"b", "application/pdf", "b.pdf")

        mock_minio_client.make_bucket.assert_called_once_with("test-invoices")

    def test_upload_s3_error_retried_then_reported(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        mock_minio_client.put_object.side_effect = s3_error("SlowDown", "/test-invoices")
        service = StorageService(storage_settings)

        with (
            patch.object(service, "_get_client", return_value=mock_minio_client),
            patch("time.sleep"),
        ):
            result = service.upload_document("doc-1", b"a", "application/pdf", "a.pdf")

        assert result.success is False
        assert "SlowDown" in (result.error or "")
        assert mock_minio_client.put_object.call_count == 3


class TestStorageServicePresignedUrl:
    """Test presigned URL generation."""

    def test_get_presigned_url_uses_configured_expiry(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        mock_minio_client.presigned_get_object.return_value = "https://minio/doc-1.pdf?sig"
        service = StorageService(storage_settings)

        with patch.object(service, "_get_client", return_value=mock_minio_client):
            result = service.get_presigned_url("doc-1.pdf")

        assert result.success is True
        assert result.url == "https://minio/doc-1.pdf?sig"
        assert result.expires_in_seconds == 600
        mock_minio_client.presigned_get_object.assert_called_once_with(
            bucket_name="test-invoices",
            object_name="doc-1.pdf",
            expires=timedelta(seconds=600),
        )

    def test_get_presigned_url_s3_error(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        mock_minio_client.presigned_get_object.side_effect = s3_error("NoSuchKey", "/doc-1.pdf")
        service = StorageService(storage_settings)

        with patch.object(service, "_get_client", return_value=mock_minio_client):
            result = service.get_presigned_url("doc-1.pdf")

        assert result.success is False
        assert "NoSuchKey" in (result.error or "")


class TestStorageServiceDelete:
    """Test storage delete operations."""

    def test_delete_object_success(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        service = StorageService(storage_settings)

        with patch.object(service, "_get_client", return_value=mock_minio_client):
            result = service.delete_object("doc-1.pdf")

        assert result.success is True
        mock_minio_client.remove_object.assert_called_once_with(
            bucket_name="test-invoices", object_name="doc-1.pdf"
        )

    def test_delete_object_s3_error(
        self, storage_settings: Settings, mock_minio_client: MagicMock
    ) -> None:
        mock_minio_client.remove_object.side_effect = s3_error("NoSuchKey", "/doc-1.pdf")
        service = StorageService(storage_settings)

        with patch.object(service, "_get_client", return_value=mock_minio_client):
            result = service.delete_object("doc-1.pdf")

        assert result.success is False
