"""Errand walkthrough: teach a weekly invoice chore, then let it run alone.

The ``TOOLS`` mapping can also be used from the CLI:

    errand workflow run friday-invoices-expenses --executor guides.invoice_workflow:TOOLS
"""

import asyncio
import csv
import glob
import os
import tempfile

from errand import (
    CallableToolExecutor,
    ConfidenceTracker,
    Decision,
    StepApprover,
    WorkflowRunner,
    generate_plan,
    parse_intent,
)
from errand.persistence import InMemoryWorkflowRepository


def file_glob(path, pattern="*"):
    return sorted(glob.glob(os.path.join(path, pattern)))


def pdf_extract(files, fields):
    # Stand-in extractor: "<vendor>_<amount>.pdf"
    rows = []
    for name in files:
        vendor, _, amount = os.path.splitext(os.path.basename(name))[0].partition("_")
        rows.append({"vendor": vendor, "amount": amount})
    return rows


def csv_append(path, data):
    new = not os.path.exists(path)
    with open(path, "a", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=["vendor", "amount"])
        if new:
            writer.writeheader()
        writer.writerows(data)
    return len(data)


TOOLS = {"file_glob": file_glob, "pdf_extract": pdf_extract, "csv_append": csv_append}


class AlwaysApprove(StepApprover):
    async def confirm(self, step, preview, params):
        print(f"👀 {preview}")
        return Decision.approve()


async def main():
    workdir = tempfile.mkdtemp()
    inbox = os.path.join(workdir, "inbox")
    os.makedirs(inbox)
    for name in ("acme_120.pdf", "globex_75.pdf"):
        open(os.path.join(inbox, name), "w").close()
    ledger = os.path.join(workdir, "expenses.csv")

    intent = parse_intent(
        f"Every Friday at 5pm, extract vendor and amount from {inbox} invoices "
        f"and add them to {ledger}"
    )
    steps = generate_plan(intent)
    print(f"📝 {intent.name}: {[s.tool for s in steps]}")

    repo = InMemoryWorkflowRepository()
    workflow = await repo.create_workflow(
        intent.name, steps, trigger=intent.trigger.model_dump(), description=intent.description
    )
    runner = WorkflowRunner(repo, CallableToolExecutor(TOOLS), approver=AlwaysApprove())

    for attempt in range(1, 6):
        result = await runner.run(workflow.id)
        stored = await repo.get_workflow(workflow.id)
        print(f"✅ Run {attempt}: {result.status}, confidence {stored.confidence:.0%}")

    status = await ConfidenceTracker(repo, workflow.id).evaluate_graduation(
        stored.confidence, stored.run_count
    )
    print(f"🎓 Ready to run unattended: {status.ready}")
    print(f"📄 Ledger written to {ledger}")


if __name__ == "__main__":
    asyncio.run(main())
