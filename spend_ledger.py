class SpendLedger:
    """
    Running total of native currency (wei) spent on gas during one agent run.

    Lives in memory only: created at process start, never persisted and never
    shared with another keeper process.
    """

    def __init__(self, cap=None):
        self.cap = cap if cap else None
        self.spent = 0
        self.entries = 0

    def add(self, cost_wei):
        if cost_wei < 0:
            raise ValueError(f"negative spend: {cost_wei}")
        self.spent += cost_wei
        self.entries += 1
        return self.spent

    def projected(self, cost_wei):
        return self.spent + cost_wei

    def would_exceed(self, cost_wei):
        if self.cap is None:
            return False
        return self.projected(cost_wei) > self.cap

    @property
    def remaining(self):
        if self.cap is None:
            return None
        return max(0, self.cap - self.spent)

    def __repr__(self):
        return f"SpendLedger(spent={self.spent}, cap={self.cap}, entries={self.entries})"
