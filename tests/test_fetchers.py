import json

import pytest
import requests

from job_monitor.errors import FetchError
from job_monitor.fetchers import HttpFetcher, extract_posting_fields
from job_monitor.models import FetchedPage, NotFound

POSTING_HTML = """
<html><head><title>Careers</title>
<script type="application/ld+json">
{"@context": "https://schema.org", "@graph": [
  {"@type": "Organization", "name": "Acme"},
  {"@type": "JobPosting",
   "title": "Data Engineer",
   "hiringOrganization": {"@type": "Organization", "name": "Acme"},
   "jobLocation": {"@type": "Place", "address": {"addressLocality": "Berlin", "addressCountry": "DE"}},
   "employmentType": "FULL_TIME",
   "baseSalary": {"@type": "MonetaryAmount", "currency": "EUR",
                  "value": {"@type": "QuantitativeValue", "minValue": 70000, "maxValue": 90000}},
   "description": "<p>Build <b>pipelines</b>.</p>"}
]}
</script></head><body><h1>Data Engineer</h1></body></html>
"""


class FakeResponse:
    def __init__(self, status_code=200, body=b"", content_type="text/html"):
        self.status_code = status_code
        self.content = body
        self.headers = {"Content-Type": content_type}


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error

    def get(self, url, headers, timeout):
        if self.error:
            raise self.error
        return self.response


def test_json_ld_posting_is_parsed():
    fields = extract_posting_fields(POSTING_HTML)
    assert fields["title"] == "Data Engineer"
    assert fields["company"] == "Acme"
    assert "Berlin" in fields["location"]
    assert fields["salary_min"] == 70000
    assert fields["salary_max"] == 90000
    assert fields["salary_currency"] == "EUR"
    assert fields["description"] == "Build pipelines ."


def test_page_without_json_ld_falls_back_to_heading():
    fields = extract_posting_fields("<html><body><h1>Backend Engineer</h1><p>Join us</p></body></html>")
    assert fields["title"] == "Backend Engineer"


def test_fetch_success_returns_page_with_html_artifact():
    body = POSTING_HTML.encode("utf-8")
    fetcher = HttpFetcher(session=FakeSession(FakeResponse(200, body, "text/html; charset=utf-8")))
    result = fetcher.fetch("https://jobs.example.com/p/1")
    assert isinstance(result, FetchedPage)
    assert result.raw_artifacts == {"html": body}
    assert result.content_type == "text/html"


@pytest.mark.parametrize("status", [404, 410])
def test_gone_status_is_not_found(status):
    fetcher = HttpFetcher(session=FakeSession(FakeResponse(status)))
    assert isinstance(fetcher.fetch("https://jobs.example.com/p/1"), NotFound)


def test_removed_marker_is_not_found():
    html = b"<html><body><p>This job is no longer available.</p></body></html>"
    fetcher = HttpFetcher(session=FakeSession(FakeResponse(200, html)))
    assert isinstance(fetcher.fetch("https://jobs.example.com/p/1"), NotFound)


def test_server_error_raises_fetch_error():
    fetcher = HttpFetcher(session=FakeSession(FakeResponse(503)))
    with pytest.raises(FetchError) as info:
        fetcher.fetch("https://jobs.example.com/p/1")
    assert info.value.status_code == 503


def test_network_error_raises_fetch_error():
    fetcher = HttpFetcher(session=FakeSession(error=requests.ConnectionError("reset")))
    with pytest.raises(FetchError):
        fetcher.fetch("https://jobs.example.com/p/1")


def test_file_urls_for_recorded_postings(tmp_path):
    path = tmp_path / "posting.json"
    path.write_text(json.dumps({"@type": "JobPosting", "title": "Analyst"}), encoding="utf-8")

    result = HttpFetcher().fetch(path.as_uri())
    missing = HttpFetcher().fetch((tmp_path / "gone.html").as_uri())

    assert isinstance(result, FetchedPage)
    assert result.fields["title"] == "Analyst"
    assert isinstance(missing, NotFound)
