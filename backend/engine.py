from access import AccessDecider
from items import ItemCatalog
from loans import LoanLifecycle, LoanRequestWorkflow
from repository import Repository
from trust import TrustRequestWorkflow, TrustStore
from visibility import VisibilityEngine


class LendingEngine:
    """Every engine component wired over one repository."""

    def __init__(self, repo: Repository):
        self.repo = repo
        self.trust = TrustStore(repo)
        self.trust_requests = TrustRequestWorkflow(repo)
        self.visibility = VisibilityEngine(repo, self.trust)
        self.items = ItemCatalog(repo, self.visibility)
        self.loans = LoanLifecycle(repo)
        self.loan_requests = LoanRequestWorkflow(repo, self.visibility, self.loans)
        self.access = AccessDecider(repo, self.trust, self.visibility)
