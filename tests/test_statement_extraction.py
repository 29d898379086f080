import httpx
import pytest

from pcbcrm.errors import JobHandlerError
from pcbcrm.services.statement_extraction import StatementExtractionHandler

EXTRACT_URL = "http://extractor.test/extract"
INPUT = {"document_url": "s3://statements/acme.pdf", "file_name": "acme.pdf", "merchant_id": "m-9"}


class ProgressRecorder:
    def __init__(self):
        self.updates = []

    async def __call__(self, progress):
        self.updates.append(progress)


def make_handler(respond):
    client = httpx.AsyncClient(transport=httpx.MockTransport(respond))
    return StatementExtractionHandler(client, EXTRACT_URL, timeout=1)


async def test_returns_extracted_fields():
    seen = []

    def respond(request):
        seen.append(request)
        return httpx.Response(200, json={"monthly_volume": 48000, "effective_rate": 2.9})

    progress = ProgressRecorder()
    result = await make_handler(respond)(INPUT, progress)

    assert result == {
        "document_url": "s3://statements/acme.pdf",
        "extracted": {"monthly_volume": 48000, "effective_rate": 2.9},
    }
    assert str(seen[0].url) == EXTRACT_URL
    assert [u["stage"] for u in progress.updates] == ["extracting", "done"]


async def test_missing_document():
    def respond(request):
        raise AssertionError("service must not be called")

    with pytest.raises(JobHandlerError, match="No statement document provided"):
        await make_handler(respond)({"file_name": "acme.pdf"}, ProgressRecorder())


@pytest.mark.parametrize(
    ("status_code", "message"),
    [
        (422, "Statement could not be read - upload a clearer copy"),
        (500, "Statement extraction failed - please retry"),
    ],
)
async def test_service_errors(status_code, message):
    def respond(request):
        return httpx.Response(status_code, json={"detail": "nope"})

    with pytest.raises(JobHandlerError) as exc_info:
        await make_handler(respond)(INPUT, ProgressRecorder())
    assert str(exc_info.value) == message


async def test_timeout():
    def respond(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(JobHandlerError, match="timed out - please retry"):
        await make_handler(respond)(INPUT, ProgressRecorder())


async def test_non_object_response():
    def respond(request):
        return httpx.Response(200, json=["not", "a", "dict"])

    with pytest.raises(JobHandlerError, match="returned no data"):
        await make_handler(respond)(INPUT, ProgressRecorder())
