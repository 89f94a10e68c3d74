import os

import pytest

from errand import intent as parser
from errand import planner
from errand.contracts import Destination, Intent, LiteralParam, Reference, Source, Step, ref
from errand.errors import PlanError


def _home(*parts):
    return os.path.abspath(os.path.expanduser(os.path.join("~", *parts)))


def test_invoice_plan_chains_glob_extract_and_append():
    intent = parser.parse(
        "Every Friday at 5pm, extract vendor and amount from invoices in my Downloads "
        "folder and add them to ~/expenses.csv"
    )
    steps = planner.generate(intent)

    assert [s.tool for s in steps] == ["file_glob", "pdf_extract", "csv_append"]
    assert [s.id for s in steps] == [1, 2, 3]

    glob, extract, append = steps
    assert glob.params["path"] == LiteralParam(value=_home("Downloads"))
    assert glob.params["pattern"].value == "*.pdf"
    assert glob.output_key == "files"
    assert extract.params["files"] == Reference(name="files")
    assert extract.params["fields"].value == ["vendor", "amount"]
    assert extract.output_key == "extracted"
    assert append.params["data"] == Reference(name="extracted")
    assert append.params["path"].value == _home("expenses.csv")
    assert all(s.confidence == 0.0 for s in steps)


def test_pdf_without_folder_gets_default_glob():
    intent = Intent(
        name="pdfs",
        sources=[Source(type="pdf", hint="pdf")],
        destinations=[Destination(type="file", path="/tmp/notes.txt")],
    )
    steps = planner.generate(intent)

    assert [s.tool for s in steps] == ["file_glob", "pdf_extract", "file_append"]
    assert steps[0].params["path"].value == _home("Downloads")
    assert steps[2].params["data"] == Reference(name="extracted")


def test_destinations_only_start_from_default_folder():
    intent = parser.parse("Fill out the expense form on workday")
    steps = planner.generate(intent)

    assert [s.tool for s in steps] == ["file_glob", "browser_form", "browser_form"]
    assert steps[0].params["pattern"].value == "*"
    assert steps[1].params["target"].value == "expense"
    assert steps[2].params["target"].value == "workday"
    assert steps[1].params["data"] == Reference(name="files")


def test_repeated_sources_get_distinct_keys():
    intent = Intent(
        name="two-sites",
        sources=[Source(type="web", hint="a.com"), Source(type="web", hint="b.com")],
        destinations=[Destination(type="file", path="/tmp/out.csv")],
    )
    steps = planner.generate(intent)

    assert [s.output_key for s in steps[:2]] == ["page", "page_2"]
    assert steps[0].params["url"].value == "https://a.com"
    assert steps[2].params["data"] == Reference(name="page_2")


def test_empty_intent_is_rejected():
    with pytest.raises(PlanError):
        planner.generate(parser.parse("hello"))


def test_validate_plan_checks_order_and_references():
    good = [
        Step(id=1, tool="file_glob", output_key="files"),
        Step(id=2, tool="csv_append", params={"data": ref("files")}),
    ]
    planner.validate_plan(good)

    with pytest.raises(PlanError):
        planner.validate_plan([])
    with pytest.raises(PlanError):
        planner.validate_plan([Step(id=2, tool="file_glob")])
    with pytest.raises(PlanError):
        planner.validate_plan(
            [
                Step(id=1, tool="csv_append", params={"data": ref("files")}),
                Step(id=2, tool="file_glob", output_key="files"),
            ]
        )
