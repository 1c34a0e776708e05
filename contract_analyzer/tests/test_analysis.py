import io
import json
import threading
import unittest
import zipfile
from unittest.mock import patch

from contract_analyzer.analysis import (
    ContractAnalyzer,
    analyze_contract_text,
    build_analysis_prompt,
    build_fallback_analysis,
    find_balanced_json_object,
    parse_analysis_response,
)
from contract_analyzer.analysis_config import AnalysisSettings
from contract_analyzer.errors import ConflictError, ModelError, NotFoundError, StorageError, ValidationError
from contract_analyzer.extraction import DOCX_MIME_TYPE
from contract_analyzer.model_provider import DisabledLanguageModel
from contract_analyzer.storage import InMemoryBlobStore, InMemoryRecordStore

SAMPLE_TEXT = (
    "CONSULTING AGREEMENT between Acme Corporation and Globex Limited. "
    "Payment is due within 60 days. Either party may terminate on 90 days notice."
)


def _model_analysis(risk_score=6):
    return {
        "risk_score": risk_score,
        "overall_summary": "Long payment window and asymmetric termination rights.",
        "key_terms": {
            "payment_terms": "Net 60",
            "termination_clause": "90 days notice",
            "liability_limitations": "Not specified",
            "intellectual_property": "Not specified",
        },
        "risks": [
            {
                "category": "payment",
                "severity": 6,
                "description": "Cash flow exposure from 60 day terms.",
                "recommendation": "Negotiate Net 30.",
            }
        ],
        "missing_clauses": ["Limitation of liability"],
        "recommendations": ["Add a liability cap"],
        "red_flags": [],
    }


class FakeModel:
    name = "fake"

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.prompts = []

    def invoke(self, prompt, *, max_tokens, temperature, timeout):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response


class GatedModel(FakeModel):
    """Blocks inside ``invoke`` until released so a second caller can race it."""

    def __init__(self, response):
        super().__init__(response=response)
        self.entered = threading.Event()
        self.release = threading.Event()

    def invoke(self, prompt, *, max_tokens, temperature, timeout):
        self.prompts.append(prompt)
        self.entered.set()
        self.release.wait(timeout=5)
        return self.response


def _store_contract(blob_store, record_store, contract_id="c-1", content=SAMPLE_TEXT.encode("utf-8"),
                    content_type="text/plain", filename="consulting.txt", status="uploaded"):
    storage_key = f"contracts/{contract_id}/{contract_id}.bin"
    blob_store.put(storage_key, content)
    record_store.put(
        {
            "contract_id": contract_id,
            "filename": filename,
            "content_type": content_type,
            "file_size": len(content),
            "storage_key": storage_key,
            "status": status,
            "created_at": "2026-03-01T10:00:00+00:00",
            "updated_at": "2026-03-01T10:00:00+00:00",
        }
    )
    return contract_id


def _build_corrupt_docx_bytes() -> bytes:
    document_xml = (
        '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main"><w:body>'
        + "<w:p><w:r><w:t>Services are provided on a monthly basis.</w:t></w:r></w:p>" * 20
        + "</w:body></w:document>"
    )
    payload = io.BytesIO()
    with zipfile.ZipFile(payload, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("word/document.xml", document_xml)
    damaged = bytearray(payload.getvalue())
    # Single member at offset 0: data starts after the 30 byte header and the name.
    data_start = 30 + len("word/document.xml")
    for index in range(data_start, data_start + 20):
        damaged[index] ^= 0xFF
    return bytes(damaged)


class TestParseAnalysisResponse(unittest.TestCase):
    def test_strict_json_is_accepted(self):
        parsed = parse_analysis_response(json.dumps(_model_analysis()))

        self.assertEqual(parsed.strategy, "strict")
        self.assertEqual(parsed.analysis["risk_score"], 6)

    def test_json_wrapped_in_prose_is_extracted(self):
        raw = "Here is the analysis you asked for:\n```json\n" + json.dumps(_model_analysis()) + "\n```\nThanks!"

        parsed = parse_analysis_response(raw)

        self.assertEqual(parsed.strategy, "embedded")
        self.assertEqual(parsed.analysis["key_terms"]["payment_terms"], "Net 60")

    def test_braces_inside_strings_do_not_break_balancing(self):
        text = 'prefix {"a": "close } brace", "b": {"c": "\\" {"}} suffix }'

        self.assertEqual(find_balanced_json_object(text), '{"a": "close } brace", "b": {"c": "\\" {"}}')
        self.assertIsNone(find_balanced_json_object("no object { here"))

    def test_failure_kinds(self):
        cases = {
            "": "empty",
            "I cannot analyze this contract.": "no_json",
            "Result: {risk_score: 5}": "invalid_json",
            json.dumps({"risk_score": 5}): "schema",
            json.dumps(_model_analysis(risk_score=15)): "schema",
        }
        for raw, kind in cases.items():
            with self.subTest(raw=raw):
                with self.assertRaises(ModelError) as ctx:
                    parse_analysis_response(raw)
                self.assertEqual(ctx.exception.kind, kind)


class TestAnalyzeContractText(unittest.TestCase):
    def setUp(self):
        self.settings = AnalysisSettings()

    def test_valid_model_output_is_used(self):
        model = FakeModel(response=json.dumps(_model_analysis()))

        outcome = analyze_contract_text(SAMPLE_TEXT, "consulting.txt", model=model, settings=self.settings)

        self.assertEqual(outcome.source, "model")
        self.assertFalse(outcome.degraded)
        self.assertEqual(outcome.warnings, [])
        self.assertIn("consulting.txt", model.prompts[0])

    def test_prose_wrapped_output_adds_warning(self):
        model = FakeModel(response="Sure! " + json.dumps(_model_analysis()))

        outcome = analyze_contract_text(SAMPLE_TEXT, "consulting.txt", model=model, settings=self.settings)

        self.assertEqual(outcome.source, "model")
        self.assertEqual(len(outcome.warnings), 1)

    def test_model_failures_fall_back(self):
        cases = [
            (FakeModel(error=ModelError("timeout", "OpenAI request timed out after 300 seconds.")), "timeout"),
            (FakeModel(error=TimeoutError("read timed out")), "timeout"),
            (FakeModel(error=ConnectionError("reset")), "transport"),
            (FakeModel(response="The contract looks fine to me."), "no_json"),
            (FakeModel(response='{"risk_score": 5, "overall_summary": '), "no_json"),
            (DisabledLanguageModel(), "disabled"),
        ]
        for model, kind in cases:
            with self.subTest(kind=kind):
                outcome = analyze_contract_text(SAMPLE_TEXT, "c.txt", model=model, settings=self.settings)

                self.assertEqual(outcome.source, "fallback")
                self.assertTrue(outcome.degraded)
                self.assertEqual(outcome.analysis, build_fallback_analysis())
                self.assertTrue(outcome.warnings[0].startswith(f"model_error[{kind}]"))

    def test_prompt_is_truncated_to_max_chars(self):
        long_text = "A" * 5000

        prompt = build_analysis_prompt(long_text, "long.txt", max_chars=4000)

        self.assertIn("A" * 4000, prompt)
        self.assertNotIn("A" * 4001, prompt)


class TestContractAnalyzer(unittest.TestCase):
    def setUp(self):
        self.blob_store = InMemoryBlobStore()
        self.record_store = InMemoryRecordStore()
        self.settings = AnalysisSettings(poll_interval=0.01, analysis_timeout=5)

    def _analyzer(self, model, **kwargs):
        return ContractAnalyzer(
            blob_store=self.blob_store,
            record_store=self.record_store,
            model=model,
            settings=kwargs.pop("settings", self.settings),
            **kwargs,
        )

    def test_analyze_completes_record_with_model_analysis(self):
        contract_id = _store_contract(self.blob_store, self.record_store)
        model = FakeModel(response=json.dumps(_model_analysis()))

        response = self._analyzer(model).analyze(contract_id)

        self.assertEqual(response["status"], "completed")
        self.assertEqual(response["analysis_source"], "model")
        self.assertFalse(response["degraded"])
        record = self.record_store.get(contract_id)
        self.assertEqual(record["status"], "completed")
        self.assertEqual(record["analysis"]["risk_score"], 6)
        self.assertEqual(record["extraction"]["method"], "utf8_decode")
        self.assertIsNotNone(record["analyzed_at"])

    def test_unreadable_pdf_still_completes_as_degraded(self):
        contract_id = _store_contract(
            self.blob_store,
            self.record_store,
            content=b"%PDF-1.4\n" + bytes(range(0x80, 0x100)) * 4,
            content_type="application/pdf",
            filename="scan.pdf",
        )
        model = FakeModel(response=json.dumps(_model_analysis()))

        response = self._analyzer(model).analyze(contract_id)

        self.assertEqual(response["status"], "completed")
        self.assertEqual(response["analysis_source"], "model")
        self.assertTrue(response["degraded"])
        self.assertIn("SAMPLE SERVICE AGREEMENT", model.prompts[0])
        self.assertEqual(self.record_store.get(contract_id)["extraction"]["quality"], "placeholder")

    def test_broken_docx_uses_parse_error_placeholder(self):
        contract_id = _store_contract(
            self.blob_store,
            self.record_store,
            content=b"not a zip",
            content_type=DOCX_MIME_TYPE,
            filename="broken.docx",
        )

        response = self._analyzer(DisabledLanguageModel()).analyze(contract_id)

        self.assertEqual(response["analysis_source"], "fallback")
        record = self.record_store.get(contract_id)
        self.assertEqual(record["extraction"]["method"], "parse_error_placeholder")
        self.assertTrue(any("Text extraction failed" in warning for warning in record["analysis_warnings"]))

    def test_corrupt_docx_stream_still_completes(self):
        contract_id = _store_contract(
            self.blob_store,
            self.record_store,
            content=_build_corrupt_docx_bytes(),
            content_type=DOCX_MIME_TYPE,
            filename="damaged.docx",
        )

        response = self._analyzer(FakeModel(response=json.dumps(_model_analysis()))).analyze(contract_id)

        self.assertEqual(response["status"], "completed")
        self.assertTrue(response["degraded"])
        record = self.record_store.get(contract_id)
        self.assertEqual(record["status"], "completed")
        self.assertEqual(record["extraction"]["method"], "parse_error_placeholder")

    def test_failed_blob_read_releases_claim_for_retry(self):
        contract_id = _store_contract(self.blob_store, self.record_store)
        storage_key = self.record_store.get(contract_id)["storage_key"]
        content = self.blob_store.objects.pop(storage_key)
        model = FakeModel(response=json.dumps(_model_analysis()))

        with self.assertRaises(StorageError):
            self._analyzer(model).analyze(contract_id)

        self.assertEqual(self.record_store.get(contract_id)["status"], "uploaded")
        self.assertEqual(model.prompts, [])

        self.blob_store.put(storage_key, content)
        response = self._analyzer(model).analyze(contract_id)

        self.assertEqual(response["status"], "completed")
        self.assertEqual(response["analysis_source"], "model")

    def test_failed_final_write_releases_claim(self):
        contract_id = _store_contract(self.blob_store, self.record_store)
        original_update = self.record_store.update

        def _update(record_id, fields, expected_status=None):
            if fields.get("status") == "completed":
                raise StorageError("Failed to store record: disk full")
            return original_update(record_id, fields, expected_status=expected_status)

        with patch.object(self.record_store, "update", side_effect=_update):
            with self.assertRaises(StorageError):
                self._analyzer(FakeModel(response=json.dumps(_model_analysis()))).analyze(contract_id)

        self.assertEqual(self.record_store.get(contract_id)["status"], "uploaded")

    def test_waiting_caller_claims_a_released_contract(self):
        contract_id = _store_contract(self.blob_store, self.record_store, status="analyzing")

        def _release_on_first_poll(_interval):
            self.record_store.update(contract_id, {"status": "uploaded"}, expected_status="analyzing")

        model = FakeModel(response=json.dumps(_model_analysis()))
        response = self._analyzer(model, sleep=_release_on_first_poll).analyze(contract_id)

        self.assertEqual(response["status"], "completed")
        self.assertEqual(len(model.prompts), 1)

    def test_unknown_id_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            self._analyzer(FakeModel()).analyze("missing")

    def test_blank_id_raises_validation_error(self):
        with self.assertRaises(ValidationError):
            self._analyzer(FakeModel()).analyze("  ")

    def test_completed_contract_is_not_reanalyzed(self):
        contract_id = _store_contract(self.blob_store, self.record_store)
        first_model = FakeModel(response=json.dumps(_model_analysis(risk_score=3)))
        self._analyzer(first_model).analyze(contract_id)

        second_model = FakeModel(response=json.dumps(_model_analysis(risk_score=9)))
        response = self._analyzer(second_model).analyze(contract_id)

        self.assertEqual(response["analysis"]["risk_score"], 3)
        self.assertEqual(second_model.prompts, [])

    def test_concurrent_analyze_invokes_model_once(self):
        contract_id = _store_contract(self.blob_store, self.record_store)
        model = GatedModel(response=json.dumps(_model_analysis()))
        analyzer = self._analyzer(model)
        results = {}

        def _run(name):
            results[name] = analyzer.analyze(contract_id)

        first = threading.Thread(target=_run, args=("first",))
        first.start()
        self.assertTrue(model.entered.wait(timeout=5))

        second = threading.Thread(target=_run, args=("second",))
        second.start()
        model.release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        self.assertEqual(len(model.prompts), 1)
        self.assertEqual(results["first"]["analysis"], results["second"]["analysis"])
        self.assertEqual(results["second"]["status"], "completed")

    def test_waiting_caller_gives_up_after_analysis_timeout(self):
        contract_id = _store_contract(self.blob_store, self.record_store, status="analyzing")
        ticks = iter(range(100))
        sleeps = []
        analyzer = self._analyzer(
            FakeModel(),
            settings=AnalysisSettings(analysis_timeout=3, poll_interval=1),
            clock=lambda: float(next(ticks)),
            sleep=sleeps.append,
        )

        with self.assertRaises(ConflictError) as ctx:
            analyzer.analyze(contract_id)

        self.assertEqual(ctx.exception.actual_status, "analyzing")
        self.assertEqual(sleeps, [1, 1])


if __name__ == "__main__":
    unittest.main()
