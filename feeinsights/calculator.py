"""Rolling average over the fee window."""


class RollingAverageCalculator:
    """
    Running sum/count average using exact integer arithmetic.

    ``average()`` truncates (``total // count``); an empty window averages 0.
    """

    def __init__(self):
        self.total = 0
        self.count = 0

    def add(self, fee: int):
        self.total += fee
        self.count += 1

    def remove(self, fee: int):
        """
        Remove a fee that is leaving the window.

        Raises:
            ValueError: If the calculator is already empty
        """
        if self.count == 0:
            raise ValueError("cannot remove a fee from an empty window")
        self.total -= fee
        self.count -= 1

    def average(self) -> int:
        if self.count == 0:
            return 0
        return self.total // self.count

    def reset(self):
        self.total = 0
        self.count = 0
