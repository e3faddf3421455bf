from dataclasses import dataclass, field


@dataclass
class LocalizationStats:
    """
    Running aggregates of per-frame localization latency (ms).

    Passed explicitly through the frame loop and read once the stream ends.
    """

    count: int = 0
    total: float = 0.0
    minimum: float = float("inf")
    maximum: float = float("-inf")
    localized: list[tuple[str, int]] = field(default_factory=list)

    def add(self, elapsed_ms: float) -> None:
        self.count += 1
        self.total += elapsed_ms
        self.minimum = min(self.minimum, elapsed_ms)
        self.maximum = max(self.maximum, elapsed_ms)

    def add_localized(self, name: str, num_matches: int) -> None:
        self.localized.append((name, num_matches))

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    def merge(self, other: "LocalizationStats") -> "LocalizationStats":
        return LocalizationStats(
            count=self.count + other.count,
            total=self.total + other.total,
            minimum=min(self.minimum, other.minimum),
            maximum=max(self.maximum, other.maximum),
            localized=self.localized + other.localized,
        )

    def summary_lines(self) -> list[str]:
        lines = [f"Localized {len(self.localized)}/{self.count} images"]
        lines.append("Images localized with the number of 2D/3D matches:")
        lines.extend(f"  {name} : {n}" for name, n in self.localized)
        if self.count:
            lines.append(f"Processing took {self.total / 1000.0:.3f} [s] overall")
            lines.append(f"Mean time for localization: {self.mean:.2f} [ms]")
            lines.append(f"Max time for localization: {self.maximum:.2f} [ms]")
            lines.append(f"Min time for localization: {self.minimum:.2f} [ms]")
        return lines
