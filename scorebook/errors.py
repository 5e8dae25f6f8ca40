from __future__ import annotations


class ScorebookError(Exception):
    """Base for domain errors. The message is a short snake_case code."""

    status_code = 400

    def __init__(self, code: str, detail: str | None = None) -> None:
        super().__init__(code)
        self.code = code
        self.detail = detail or code

    def __str__(self) -> str:
        return self.code


class NotFoundError(ScorebookError, KeyError):
    status_code = 404


class InvalidArgumentError(ScorebookError, ValueError):
    status_code = 400


class OutOfRangeError(InvalidArgumentError):
    pass


class TagTooLongError(InvalidArgumentError):
    pass


class ConflictError(ScorebookError, ValueError):
    status_code = 409


class GameFinishedError(ConflictError):
    pass


class InvalidRoundResultError(ScorebookError, ValueError):
    status_code = 422

    def __init__(self, round_id: str, zero_count: int) -> None:
        super().__init__(
            "invalid_round_result",
            f"expected exactly one player with 0 points in round {round_id}, found {zero_count}",
        )
        self.round_id = round_id
        self.zero_count = zero_count


class BatchLimitError(ScorebookError):
    status_code = 422
