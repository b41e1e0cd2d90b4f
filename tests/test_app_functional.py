import io
import os
import sys
import tempfile
import unittest
from contextlib import ExitStack
from pathlib import Path
from unittest import mock
from urllib.parse import parse_qs, quote, urlparse

FILESHARE_MODULES = [
    "fileshare.app",
    "fileshare.transfer",
    "fileshare.storage",
    "fileshare.tokens",
    "fileshare.errors",
    "fileshare",
]

ENV_KEYS = [
    "FILESHARE_STORAGE_ROOT",
    "FILESHARE_DATA_DIR",
    "FILESHARE_UPLOADS_DIR",
    "FILESHARE_LOGS_DIR",
    "FILESHARE_CLEANUP_SCHEDULER",
    "FILESHARE_RATE_LIMIT_ENABLED",
    "FILESHARE_RETENTION_HOURS",
    "FILESHARE_MAX_FILENAME_LENGTH",
    "FILESHARE_TOKEN_BYTES",
]


class FileShareAppIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["FILESHARE_STORAGE_ROOT"] = str(root)
        os.environ["FILESHARE_DATA_DIR"] = str(root / "data")
        os.environ["FILESHARE_UPLOADS_DIR"] = str(root / "uploads")
        os.environ["FILESHARE_LOGS_DIR"] = str(root / "logs")
        os.environ["FILESHARE_CLEANUP_SCHEDULER"] = "0"
        os.environ["FILESHARE_RATE_LIMIT_ENABLED"] = "0"
        self._reload_app()

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        for module in FILESHARE_MODULES:
            sys.modules.pop(module, None)

    def _reload_app(self):
        for module in FILESHARE_MODULES:
            if module in sys.modules:
                del sys.modules[module]
        import importlib

        app_module = importlib.import_module("fileshare.app")

        self.app_module = app_module
        self.app = app_module.app
        self.app.config.update(TESTING=True)
        self.client = self.app.test_client()
        self.uploads_dir = Path(os.environ["FILESHARE_UPLOADS_DIR"])

    def _upload(self, payload: bytes, filename: str, content_type=None):
        file_field = (io.BytesIO(payload), filename)
        if content_type is not None:
            file_field = (io.BytesIO(payload), filename, content_type)
        return self.client.post(
            "/api/upload",
            data={"file": file_field},
            content_type="multipart/form-data",
        )

    def _stored_files(self):
        return [path for path in self.uploads_dir.iterdir() if path.is_file() and not path.name.startswith(".")]

    def test_upload_then_single_download(self):
        with mock.patch.object(
            self.app_module.transfer_service.generator, "generate", return_value="tok1"
        ):
            response = self._upload(b"0123456789", "x.txt")
        self.assertEqual(response.status_code, 201)
        payload = response.get_json()
        self.assertEqual(payload["token"], "tok1")
        self.assertEqual(payload["filename"], "x.txt")
        download_url = urlparse(payload["download_url"])
        self.assertEqual(download_url.path, "/api/download")
        self.assertEqual(parse_qs(download_url.query), {"token": ["tok1"]})
        self.assertTrue((self.uploads_dir / "tok1").is_file())

        download_response = self.client.get("/api/download?token=tok1")
        self.assertEqual(download_response.status_code, 200)
        disposition = download_response.headers.get("Content-Disposition", "")
        self.assertIn("attachment", disposition)
        self.assertIn("x.txt", disposition)
        self.assertEqual(download_response.data, b"0123456789")
        download_response.close()

        self.assertFalse((self.uploads_dir / "tok1").exists())
        self.assertIsNone(self.app_module.metadata_store.get("tok1"))

        repeat_response = self.client.get("/api/download?token=tok1")
        self.assertEqual(repeat_response.status_code, 404)
        self.assertEqual(repeat_response.get_json(), {"error": "File not found"})

    def test_download_replays_upload_content_type(self):
        response = self._upload(b"%PDF-1.7", "report.pdf", "application/pdf")
        self.assertEqual(response.status_code, 201)
        token = response.get_json()["token"]

        download_response = self.client.get(
            "/api/download",
            query_string={"token": token},
            headers={"Content-Type": "text/html"},
        )
        self.assertEqual(download_response.status_code, 200)
        self.assertEqual(download_response.mimetype, "application/pdf")
        self.assertEqual(download_response.data, b"%PDF-1.7")
        self.assertEqual(download_response.headers.get("X-Content-Type-Options"), "nosniff")
        download_response.close()

    def test_unparseable_content_type_falls_back_to_binary(self):
        response = self._upload(b"data", "blob.bin", "not a type")
        token = response.get_json()["token"]

        download_response = self.client.get("/api/download", query_string={"token": token})
        self.assertEqual(download_response.mimetype, "application/octet-stream")
        download_response.close()

    def test_malformed_tokens_are_bad_requests(self):
        self._upload(b"secret", "secret.txt")
        for token in ["../secret", "a/b", ".", ""]:
            with self.subTest(token=token):
                response = self.client.get("/api/download", query_string={"token": token})
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.get_json(), {"error": "Invalid token"})

        missing_param = self.client.get("/api/download")
        self.assertEqual(missing_param.status_code, 400)
        self.assertEqual(len(self._stored_files()), 1)

    def test_unknown_token_is_not_found(self):
        response = self.client.get("/api/download", query_string={"token": "doesnotexist"})
        self.assertEqual(response.status_code, 404)

    def test_closing_unread_response_consumes_token(self):
        token = self._upload(b"abandoned", "a.txt").get_json()["token"]

        response = self.client.get("/api/download", query_string={"token": token})
        self.assertEqual(response.status_code, 200)
        response.close()

        self.assertEqual(self._stored_files(), [])
        again = self.client.get("/api/download", query_string={"token": token})
        self.assertEqual(again.status_code, 404)

    def test_head_request_does_not_consume_token(self):
        token = self._upload(b"keep me", "keep.txt").get_json()["token"]

        head_response = self.client.head("/api/download", query_string={"token": token})
        self.assertEqual(head_response.status_code, 405)

        response = self.client.get("/api/download", query_string={"token": token})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"keep me")
        response.close()

    def test_upload_without_file_part(self):
        response = self.client.post(
            "/api/upload", data={"other": "value"}, content_type="multipart/form-data"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "No file part"})

    def test_unusable_filename_falls_back_to_default_name(self):
        response = self._upload(b"data", "../..")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["filename"], "upload")
        self.assertEqual(len(self._stored_files()), 1)

    def test_upload_filename_keeps_only_base_name(self):
        response = self._upload(b"data", "../../etc/passwd")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["filename"], "passwd")

    def test_filename_with_spaces_round_trips(self):
        response = self._upload(b"quarterly", "my report.pdf")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["filename"], "my report.pdf")
        token = response.get_json()["token"]

        download_response = self.client.get("/api/download", query_string={"token": token})
        self.assertEqual(download_response.status_code, 200)
        self.assertIn('filename="my report.pdf"', download_response.headers["Content-Disposition"])
        self.assertEqual(download_response.data, b"quarterly")
        download_response.close()

    def test_unicode_filename_round_trips(self):
        for name in ["データ", "データ.txt", "résumé.pdf"]:
            with self.subTest(name=name):
                response = self._upload(b"unicode", name)
                self.assertEqual(response.status_code, 201)
                self.assertEqual(response.get_json()["filename"], name)
                token = response.get_json()["token"]
                self.assertEqual(self.app_module.metadata_store.get(token).original_name, name)

                download_response = self.client.get("/api/download", query_string={"token": token})
                self.assertEqual(download_response.status_code, 200)
                disposition = download_response.headers["Content-Disposition"]
                self.assertIn("attachment", disposition)
                self.assertIn(f"filename*=UTF-8''{quote(name)}", disposition)
                self.assertEqual(download_response.data, b"unicode")
                download_response.close()

    def test_clean_filename_strips_control_characters_and_caps_length(self):
        clean = self.app_module.clean_filename
        self.assertEqual(clean("bad\x07name.txt"), "badname.txt")
        self.assertEqual(clean(None), "upload")
        self.assertEqual(clean("C:\\Users\\me\\notes.txt"), "notes.txt")

        limit = self.app_module.MAX_FILENAME_LENGTH
        capped = clean("a" * (limit + 50) + ".tar")
        self.assertEqual(len(capped), limit)
        self.assertTrue(capped.endswith(".tar"))

    def test_invalid_numeric_settings_fall_back_to_defaults(self):
        os.environ["FILESHARE_MAX_FILENAME_LENGTH"] = "lots"
        os.environ["FILESHARE_TOKEN_BYTES"] = "2"
        with self.assertLogs("fileshare.config", level="WARNING"):
            self._reload_app()

        self.assertEqual(self.app_module.MAX_FILENAME_LENGTH, 255)
        self.assertEqual(self.app_module.transfer_service.generator.nbytes, 6)
        response = self._upload(b"data", "x.txt")
        self.assertEqual(response.status_code, 201)

    def test_oversized_upload_is_rejected(self):
        self.app.config["MAX_CONTENT_LENGTH"] = 64
        response = self._upload(b"x" * 4096, "large.bin")
        self.assertEqual(response.status_code, 413)
        self.assertEqual(self._stored_files(), [])

    def test_metadata_failure_returns_generic_server_error(self):
        from fileshare.errors import StoreError

        with mock.patch.object(
            self.app_module.metadata_store,
            "put",
            side_effect=StoreError(f"disk I/O error at {self.storage_dir.name}"),
        ):
            response = self._upload(b"0123456789", "x.txt")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "Internal server error"})
        self.assertNotIn(self.storage_dir.name, response.get_data(as_text=True))
        self.assertEqual(self._stored_files(), [])

    def test_concurrency_limit_returns_503(self):
        slots = self.app_module.upload_slots
        with ExitStack() as stack:
            granted = [stack.enter_context(slots.claim()) for _ in range(slots.limit)]
            self.assertTrue(all(granted))
            response = self._upload(b"data", "x.txt")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(slots.in_use, 0)
        self.assertEqual(self._stored_files(), [])

    def test_responses_carry_request_id(self):
        response = self.client.get(
            "/api/download",
            query_string={"token": "nothing"},
            headers={"X-Request-ID": "abc123"},
        )
        self.assertEqual(response.headers.get("X-Request-ID"), "abc123")

    def test_request_logs_carry_request_id(self):
        with self.assertLogs("fileshare.lifecycle", level="INFO") as logs:
            self.client.get(
                "/api/download",
                query_string={"token": "nothing"},
                headers={"X-Request-ID": "abc123"},
            )
        self.assertTrue(any("request_id=abc123 " in line for line in logs.output))

    def test_health_check_includes_components(self):
        response = self.client.get("/health")
        self.assertIn(response.status_code, (200, 503))
        payload = response.get_json()
        self.assertEqual(payload["checks"]["database"], "ok")
        self.assertEqual(payload["checks"]["uploads_writable"], "ok")
        self.assertEqual(payload["checks"]["cleanup"], "disabled")
        self.assertIn("disk_space_gb", payload["checks"])
        self.assertEqual(self._stored_files(), [])

    def test_expired_upload_is_not_downloadable(self):
        os.environ["FILESHARE_RETENTION_HOURS"] = "1"
        self._reload_app()

        token = self._upload(b"soon gone", "expire.txt").get_json()["token"]
        service = self.app_module.transfer_service
        with mock.patch.object(service, "_clock", return_value=service._clock() + 7200):
            response = self.client.get("/api/download", query_string={"token": token})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(self._stored_files(), [])


if __name__ == "__main__":
    unittest.main()
