import os
import threading

import pytest

from webshot.data_model import (BatchSummary, CaptureResult, FailureReason,
                                ReportError, ReportSealedError, TaskState)
from webshot.report import ReportAggregator


def make_result(endpoint, image_path=None, status_code=200, failure_reason=None, error=None):
    state = TaskState.FINALIZED if status_code is not None else TaskState.FETCH_FAILED
    return CaptureResult(endpoint, state, status_code=status_code, image_path=image_path,
                         failure_reason=failure_reason, error=error)


class TestReportAggregator:

    def test_open_append_seal(self, tmp_path):
        report_path = str(tmp_path / 'report.html')
        image_path = str(tmp_path / 'http_10_0_0_1_80.jpeg')
        report = ReportAggregator(report_path)
        report.open()

        ok = make_result('http://10.0.0.1:80', image_path=image_path)
        failed = make_result('http://nohost.invalid:80', status_code=None,
                             failure_reason=FailureReason.CONNECTION_ERROR, error='Name or service not known')
        report.append(ok)
        report.append(failed)
        report.seal(BatchSummary([ok, failed]))

        with open(report_path, 'r') as report_fd:
            content = report_fd.read()

        assert report.sealed == True
        assert report.entry_count == 2
        assert content.startswith('<!DOCTYPE html>')
        assert content.rstrip().endswith('</html>')
        assert content.count('<div class="shot') == 2
        assert 'src="http_10_0_0_1_80.jpeg"' in content
        assert 'href="http://10.0.0.1:80"' in content
        assert 'FAILED (connection error)' in content
        assert '2 submitted, 1 succeeded, 1 failed' in content

    def test_non_success_status_shows_code(self, tmp_path):
        report = ReportAggregator(str(tmp_path / 'report.html'))
        report.open()
        report.append(make_result('http://10.0.0.1:80', status_code=404,
                                  failure_reason=FailureReason.NON_SUCCESS_STATUS,
                                  error='HTTP status 404 not rendered'))
        report.seal()

        with open(report.path, 'r') as report_fd:
            content = report_fd.read()

        assert '<span class="status">404</span>' in content
        assert '<img' not in content

    def test_markup_is_escaped(self, tmp_path):
        report = ReportAggregator(str(tmp_path / 'report.html'))
        report.open()
        report.append(make_result('http://evil"><script>alert(1)</script>:80', status_code=None,
                                  failure_reason=FailureReason.MALFORMED_RESPONSE,
                                  error='<b>bad</b>'))
        report.seal()

        with open(report.path, 'r') as report_fd:
            content = report_fd.read()

        assert '<script>' not in content
        assert '<b>bad</b>' not in content
        assert '&lt;b&gt;bad&lt;/b&gt;' in content

    def test_open_replaces_existing_report(self, tmp_path):
        report_path = tmp_path / 'report.html'
        report_path.write_text('stale report from a previous run')

        report = ReportAggregator(str(report_path))
        report.open()
        report.seal()

        content = report_path.read_text()
        assert 'stale report' not in content
        assert content.count('<html') == 1

    def test_open_creates_parent_directories(self, tmp_path):
        report_path = tmp_path / 'out' / 'nested' / 'report.html'
        report = ReportAggregator(str(report_path))
        report.open()

        assert os.path.isfile(str(report_path))

    def test_append_after_seal_raises(self, tmp_path):
        report = ReportAggregator(str(tmp_path / 'report.html'))
        report.open()
        report.seal()

        with pytest.raises(ReportSealedError):
            report.append(make_result('http://10.0.0.1:80'))

    def test_seal_twice_raises(self, tmp_path):
        report = ReportAggregator(str(tmp_path / 'report.html'))
        report.open()
        report.seal()

        with pytest.raises(ReportSealedError):
            report.seal()

    def test_append_before_open_raises(self, tmp_path):
        report = ReportAggregator(str(tmp_path / 'report.html'))

        with pytest.raises(ReportError):
            report.append(make_result('http://10.0.0.1:80'))

    def test_report_path_is_a_directory(self, tmp_path):
        report = ReportAggregator(str(tmp_path))

        with pytest.raises(ReportError) as exc_info:
            report.open()
        assert str(tmp_path) in str(exc_info.value)

    def test_concurrent_appends_do_not_interleave(self, tmp_path):
        report = ReportAggregator(str(tmp_path / 'report.html'))
        report.open()

        def append_many(worker):
            for i in range(25):
                report.append(make_result('http://10.%d.0.%d:80' % (worker, i)))

        threads = [threading.Thread(target=append_many, args=(worker,)) for worker in range(8)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()
        report.seal()

        with open(report.path, 'r') as report_fd:
            content = report_fd.read()

        assert report.entry_count == 200
        assert content.count('<div class="shot') == 200
        assert content.count('</span></div>') == 200
