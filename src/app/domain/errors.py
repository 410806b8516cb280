from __future__ import annotations


class AutoFindError(Exception):
    retryable = True


class EmptyQueryError(AutoFindError):
    retryable = False

    def __init__(self, message: str = "Query must contain at least one word"):
        super().__init__(message)


class NoTrustedSourcesError(AutoFindError):
    def __init__(self, query: str):
        super().__init__(f"Unable to fetch trusted sources for this recipe: {query}")
        self.query = query


class GenerationError(AutoFindError):
    pass


class GenerationConfigurationError(GenerationError):
    retryable = False


class GenerationParseError(GenerationError):
    pass


class RateLimitedError(GenerationError):
    def __init__(self, message: str = "Generation API rate limit reached", attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class RecipeValidationError(AutoFindError):
    def __init__(self, errors: list[str]):
        super().__init__(f"Generated recipe validation failed: {', '.join(errors)}")
        self.errors = errors


class DedupeCheckError(AutoFindError):
    pass


class PersistenceError(AutoFindError):
    def __init__(self, operation: str, reason: str):
        super().__init__(f"Recipe persistence failed during {operation}: {reason}")
        self.operation = operation
        self.reason = reason


class DuplicateRecipeError(AutoFindError):
    def __init__(self, existing_recipe_id: str):
        super().__init__(f"Recipe with the same name fingerprint already exists: {existing_recipe_id}")
        self.existing_recipe_id = existing_recipe_id


class JobNotFoundError(AutoFindError):
    retryable = False

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobRepositoryError(AutoFindError):
    def __init__(self, operation: str, reason: str):
        super().__init__(f"Job repository error during {operation}: {reason}")
        self.operation = operation
        self.reason = reason


class WorkerConfigurationError(AutoFindError):
    retryable = False

    def __init__(self, errors: list[str]):
        super().__init__(f"Worker configuration errors: {', '.join(errors)}")
        self.errors = errors
