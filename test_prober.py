#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for the Jenkins build status prober.

This script validates:
- Text status classification (total and deterministic)
- Double escaping of branch names in job paths
- Branch order of probe results regardless of completion order
- Transport errors surfacing only after all branch probes joined
"""

import sys
import threading
import time
from pathlib import Path

import httpx

# Add the project root to Python path to import our module
sys.path.insert(0, str(Path(__file__).parent))

from statuspage import (
    DEFAULT_CONFIG,
    STATUS_ABORTED,
    STATUS_FAILING,
    STATUS_NOT_RUN,
    STATUS_PASSING,
    STATUS_RUNNING,
    APIStatistics,
    BuildStatusProber,
    JenkinsAPIClient,
    JenkinsAPIError,
    classify_status,
    escape_branch,
    setup_logging,
)

JENKINS_URL = "https://jenkins.example.com/service/terraform"


def make_prober(handler, branches, stats=None):
    jenkins = JenkinsAPIClient(
        JENKINS_URL,
        stats=stats or APIStatistics(),
        transport=httpx.MockTransport(handler),
    )
    return BuildStatusProber(
        jenkins,
        "dcos-terraform",
        branches,
        DEFAULT_CONFIG["badges"],
        setup_logging("ERROR", False),
    )


def job_of(request) -> str:
    return request.url.query.decode("ascii").split("job=", 1)[1]


def test_classify_status_known_answers():
    assert classify_status(200, "Success") == STATUS_PASSING
    assert classify_status(200, "In progress") == STATUS_RUNNING
    assert classify_status(200, "Failed") == STATUS_FAILING
    assert classify_status(200, "Aborted") == STATUS_ABORTED


def test_classify_status_everything_else_is_not_run():
    assert classify_status(200, "Not run") == STATUS_NOT_RUN
    assert classify_status(200, "Unstable") == STATUS_NOT_RUN
    assert classify_status(200, "") == STATUS_NOT_RUN
    assert classify_status(200, "success") == STATUS_NOT_RUN
    assert classify_status(404, "Success") == STATUS_NOT_RUN
    assert classify_status(500, "Failed") == STATUS_NOT_RUN


def test_escape_branch_encodes_twice():
    assert escape_branch("master") == "master"
    assert escape_branch("support/0.1.x") == "support%252F0.1.x"
    assert escape_branch("feature/a b") == "feature%252Fa%2520b"


def test_jenkins_urls_use_double_escaped_branch():
    jenkins = JenkinsAPIClient(JENKINS_URL + "/")

    assert jenkins.text_status_url("dcos-terraform", "terraform-aws-vpc", "support/0.2.x") == (
        JENKINS_URL + "/buildStatus/text?job=dcos-terraform/terraform-aws-vpc/support%252F0.2.x"
    )
    assert jenkins.job_url("dcos-terraform", "terraform-aws-vpc", "support/0.2.x") == (
        JENKINS_URL + "/job/dcos-terraform/job/terraform-aws-vpc/job/support%252F0.2.x/"
    )
    jenkins.close()


def test_probe_requests_text_endpoint_with_escaped_job():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, text="Success")

    prober = make_prober(handler, ["support/0.1.x"])
    prober.probe("terraform-aws-vpc")

    assert len(seen) == 1
    assert seen[0].url.path == "/service/terraform/buildStatus/text"
    assert job_of(seen[0]) == "dcos-terraform/terraform-aws-vpc/support%252F0.1.x"


def test_probe_results_follow_branch_order_not_completion_order():
    """The first branch answers last but still comes first in the result."""
    second_answered = threading.Event()

    def handler(request):
        job = job_of(request)
        if job.endswith("support%252F0.2.x"):
            second_answered.wait(timeout=5)
            time.sleep(0.05)
            return httpx.Response(200, text="Success")
        second_answered.set()
        return httpx.Response(200, text="Failed")

    prober = make_prober(handler, ["support/0.2.x", "support/0.1.x"])
    results = prober.probe("terraform-aws-vpc")

    assert [r["branch"] for r in results] == ["support/0.2.x", "support/0.1.x"]
    assert [r["status"] for r in results] == [STATUS_PASSING, STATUS_FAILING]


def test_probe_result_carries_badge_and_link():
    def handler(request):
        return httpx.Response(200, text="In progress")

    prober = make_prober(handler, ["master"])
    (result,) = prober.probe("terraform-gcp-base")

    assert result == {
        "branch": "master",
        "status": STATUS_RUNNING,
        "icon": DEFAULT_CONFIG["badges"][STATUS_RUNNING],
        "link": JENKINS_URL + "/job/dcos-terraform/job/terraform-gcp-base/job/master/",
    }


def test_probe_non_200_is_not_run():
    stats = APIStatistics()

    def handler(request):
        return httpx.Response(404, text="Success")

    prober = make_prober(handler, ["master", "support/0.2.x"], stats)
    results = prober.probe("terraform-aws-new")

    assert [r["status"] for r in results] == [STATUS_NOT_RUN, STATUS_NOT_RUN]
    assert results[0]["icon"] == DEFAULT_CONFIG["badges"][STATUS_NOT_RUN]
    assert stats.stats["jenkins"]["errors"][404] == 2


def test_probe_length_matches_branch_list():
    branches = ["master", "support/0.3.x", "support/0.2.x", "support/0.1.x", "develop"]

    def handler(request):
        return httpx.Response(200, text="Aborted")

    results = make_prober(handler, branches).probe("terraform-azurerm-vnet")

    assert [r["branch"] for r in results] == branches
    assert all(r["status"] == STATUS_ABORTED for r in results)


def test_probe_transport_error_raises_after_all_branches_finish():
    finished = []
    lock = threading.Lock()

    def handler(request):
        job = job_of(request)
        if job.endswith("/master"):
            raise httpx.ReadTimeout("timed out", request=request)
        time.sleep(0.1)
        with lock:
            finished.append(job)
        return httpx.Response(200, text="Success")

    stats = APIStatistics()
    prober = make_prober(handler, ["master", "support/0.2.x", "support/0.1.x"], stats)

    try:
        prober.probe("terraform-aws-vpc")
    except JenkinsAPIError as e:
        assert "terraform-aws-vpc@master" in str(e)
    else:
        raise AssertionError("transport failure must raise JenkinsAPIError")

    assert len(finished) == 2
    assert stats.stats["jenkins"]["errors"]["exception"] == 1
    assert stats.stats["jenkins"]["success"] == 2


def run_all_tests() -> bool:
    """Run all build status prober tests."""
    print("🧪 Running Build Status Prober Tests")
    print("-" * 60)

    tests = [
        test_classify_status_known_answers,
        test_classify_status_everything_else_is_not_run,
        test_escape_branch_encodes_twice,
        test_jenkins_urls_use_double_escaped_branch,
        test_probe_requests_text_endpoint_with_escaped_job,
        test_probe_results_follow_branch_order_not_completion_order,
        test_probe_result_carries_badge_and_link,
        test_probe_non_200_is_not_run,
        test_probe_length_matches_branch_list,
        test_probe_transport_error_raises_after_all_branches_finish,
    ]

    failed = 0
    for test in tests:
        try:
            test()
            print(f"Testing {test.__name__}... ✅")
        except Exception as e:
            failed += 1
            print(f"Testing {test.__name__}... ❌")
            print(f"  Exception: {e}")

    print("-" * 60)
    print(f"📊 Test Results: {len(tests) - failed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
