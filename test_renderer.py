#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for the content renderer.

This script validates:
- Markdown table generation (one row per repository, one column per branch)
- Empty provider buckets
- Markdown to HTML page conversion
- Publishing of the rendered page into the page cache
"""

import copy
import sys
from pathlib import Path

# Add the project root to Python path to import our module
sys.path.insert(0, str(Path(__file__).parent))

from statuspage import (
    DEFAULT_CONFIG,
    GENERATOR,
    ContentRenderer,
    SnapshotStore,
    StatusPageError,
    generate_provider_section,
    markdown_body_to_html,
    markdown_to_html,
    partition_repositories,
    setup_logging,
    to_repository,
)

BRANCHES = ["master", "support/0.2.x"]


def create_test_config():
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["providers"] = ["aws", "gcp", "azurerm"]
    config["branches"] = list(BRANCHES)
    config["org"] = "dcos-terraform"
    return config


def result(branch, status="passing"):
    return {
        "branch": branch,
        "status": status,
        "icon": f"https://img.example.com/{status}.svg",
        "link": f"https://jenkins.example.com/job/{branch}/",
    }


class FakeProber:
    """Records probed repositories and answers with fixed statuses."""

    def __init__(self, statuses=None):
        self.statuses = statuses or {}
        self.probed = []

    def probe(self, repository_name):
        self.probed.append(repository_name)
        status = self.statuses.get(repository_name, "passing")
        return [result(branch, status) for branch in BRANCHES]


def make_buckets(names, providers):
    repositories = [
        to_repository({"id": i, "name": name, "owner": {"login": "dcos-terraform"}})
        for i, name in enumerate(names)
    ]
    return partition_repositories(repositories, providers, "terraform-")


def table_rows(section):
    return [line for line in section.splitlines() if line.startswith("|")]


def test_provider_section_has_one_row_per_repository():
    rows = [
        ("terraform-aws-vpc", [result("master"), result("support/0.2.x", "failing")]),
        ("terraform-aws-cluster", [result("master", "running"), result("support/0.2.x")]),
    ]

    section = generate_provider_section("aws", BRANCHES, rows)
    lines = table_rows(section)

    assert section.startswith("## aws\n")
    assert lines[0] == "| aws | master | support/0.2.x |"
    assert lines[1] == "| --- | --- | --- |"
    assert len(lines) == 4
    assert lines[2].startswith("| terraform-aws-vpc | ")
    assert lines[3].startswith("| terraform-aws-cluster | ")
    # name column plus one cell per branch
    assert all(line.count("|") == len(BRANCHES) + 2 for line in lines)
    assert (
        "[![failing](https://img.example.com/failing.svg)]"
        "(https://jenkins.example.com/job/support/0.2.x/)"
    ) in lines[2]


def test_empty_bucket_renders_header_only():
    section = generate_provider_section("azurerm", BRANCHES, [])

    assert table_rows(section) == [
        "| azurerm | master | support/0.2.x |",
        "| --- | --- | --- |",
    ]


def test_generate_markdown_walks_providers_in_configured_order():
    config = create_test_config()
    buckets = make_buckets(
        ["terraform-gcp-base", "terraform-aws-vpc", "terraform-aws-cluster"],
        config["providers"],
    )
    prober = FakeProber()
    renderer = ContentRenderer(
        config, prober, SnapshotStore("b"), SnapshotStore("p"), setup_logging("ERROR", False)
    )

    markdown = renderer.generate_markdown(buckets)

    assert markdown.startswith(f"# {config['title']}\n")
    assert markdown.index("## aws") < markdown.index("## gcp") < markdown.index("## azurerm")
    assert prober.probed == ["terraform-aws-vpc", "terraform-aws-cluster", "terraform-gcp-base"]
    assert GENERATOR in markdown


def test_render_publishes_complete_page():
    config = create_test_config()
    bucket_store = SnapshotStore("buckets")
    page_store = SnapshotStore("page")
    bucket_store.publish(make_buckets(["terraform-aws-vpc"], config["providers"]))
    renderer = ContentRenderer(
        config,
        FakeProber({"terraform-aws-vpc": "failing"}),
        bucket_store,
        page_store,
        setup_logging("ERROR", False),
    )

    page = renderer.render()

    assert page_store.current() == page
    assert page_store.version == 1
    assert page.startswith("<!DOCTYPE html>")
    assert "<td>terraform-aws-vpc</td>" in page
    assert '<img src="https://img.example.com/failing.svg" alt="failing">' in page


def test_render_without_buckets_raises():
    page_store = SnapshotStore("page", initial="last good page")
    renderer = ContentRenderer(
        create_test_config(),
        FakeProber(),
        SnapshotStore("buckets"),
        page_store,
        setup_logging("ERROR", False),
    )

    try:
        renderer.render()
    except StatusPageError:
        pass
    else:
        raise AssertionError("render must fail before the first repository fetch")

    assert page_store.current() == "last good page"


def test_markdown_to_html_page_shell():
    config = create_test_config()
    config["html"]["stylesheet"] = "/static/css/custom.css"

    page = markdown_to_html("# Title\n", config)

    assert f"<title>{config['title']}</title>" in page
    assert '<link rel="stylesheet" href="/static/css/custom.css" type="text/css">' in page
    assert '<link rel="icon" href="/favicon.ico">' in page
    assert f'<meta name="generator" content="{GENERATOR}">' in page
    assert page.rstrip().endswith("</html>")


def test_markdown_body_tables_and_badges():
    markdown = "\n".join(
        [
            "# DC/OS Terraform modules - CI STATUS",
            "",
            "## aws",
            "",
            "| aws | master |",
            "| --- | --- |",
            "| terraform-aws-vpc | [![passing](https://img.example.com/p.svg?a=1&b=2)](https://ci.example.com/job/x/) |",
            "",
            "Generated by `tool`",
        ]
    )

    body = markdown_body_to_html(markdown)

    assert '<h1 id="dcos-terraform-modules-ci-status">DC/OS Terraform modules - CI STATUS</h1>' in body
    assert '<h2 id="aws">aws</h2>' in body
    assert "<thead><tr>\n<th>aws</th>\n<th>master</th>\n</tr></thead><tbody>" in body
    assert (
        '<td><a href="https://ci.example.com/job/x/">'
        '<img src="https://img.example.com/p.svg?a=1&amp;b=2" alt="passing"></a></td>'
    ) in body
    assert body.count("<table>") == 1
    assert body.count("</tbody></table>") == 1
    assert "<p>Generated by <code>tool</code></p>" in body


def test_markdown_body_empty_table_is_closed():
    body = markdown_body_to_html("| gcp | master |\n| --- | --- |")

    assert body == "<table>\n<thead><tr>\n<th>gcp</th>\n<th>master</th>\n</tr></thead><tbody>\n</tbody></table>"


def run_all_tests() -> bool:
    """Run all content renderer tests."""
    print("🧪 Running Content Renderer Tests")
    print("-" * 60)

    tests = [
        test_provider_section_has_one_row_per_repository,
        test_empty_bucket_renders_header_only,
        test_generate_markdown_walks_providers_in_configured_order,
        test_render_publishes_complete_page,
        test_render_without_buckets_raises,
        test_markdown_to_html_page_shell,
        test_markdown_body_tables_and_badges,
        test_markdown_body_empty_table_is_closed,
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
