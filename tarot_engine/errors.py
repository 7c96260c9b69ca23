class TarotEngineError(RuntimeError):
    pass


class CatalogError(TarotEngineError):
    pass


class NoCardsAvailable(TarotEngineError):
    pass


class InsufficientCards(TarotEngineError):
    def __init__(self, requested: int, available: int):
        super().__init__(f"Requested {requested} cards but only {available} are available")
        self.requested = requested
        self.available = available


class SpreadNotFound(TarotEngineError):
    pass


class UnknownTheme(TarotEngineError):
    pass


class GenerationError(TarotEngineError):
    pass


class CacheUnavailable(TarotEngineError):
    pass
