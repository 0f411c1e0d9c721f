"""Seed a client, a freelancer and a contract with payable milestones."""
from __future__ import annotations

from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

from marketpay import models  # noqa: E402
from marketpay.config import get_settings  # noqa: E402
from marketpay.db import create_all, get_sessionmaker  # noqa: E402


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    create_all()
    session = get_sessionmaker()()

    try:
        alice = models.User(username="alice", email="alice@example.com", role=models.UserRole.CLIENT)
        bob = models.User(username="bob", email="bob@example.com", role=models.UserRole.FREELANCER)
        session.add_all([alice, bob])
        session.flush()

        project = models.Project(client_id=alice.id, title="Landing page redesign")
        session.add(project)
        session.flush()
        proposal = models.Proposal(
            project_id=project.id,
            freelancer_id=bob.id,
            amount=Decimal("800.00"),
            status=models.ProposalStatus.ACCEPTED,
        )
        session.add(proposal)
        session.flush()

        contract = models.Contract(
            client_id=alice.id,
            freelancer_id=bob.id,
            project_id=project.id,
            proposal_id=proposal.id,
            title=project.title,
            total_amount=Decimal("800.00"),
            currency=settings.DEFAULT_CURRENCY,
        )
        session.add(contract)
        session.flush()
        session.add_all(
            [
                models.Milestone(
                    contract_id=contract.id,
                    idx=1,
                    title="Wireframes",
                    amount=Decimal("300.00"),
                    status=models.MilestoneStatus.APPROVED,
                ),
                models.Milestone(contract_id=contract.id, idx=2, title="Final design", amount=Decimal("500.00")),
            ]
        )
        session.commit()
        print(f"Seed data inserted (contract {contract.id}).")
    finally:
        session.close()


if __name__ == "__main__":
    main()
