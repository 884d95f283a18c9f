from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace

from .catalog_client import CatalogError
from .config import AutocompleteConfig
from .engine import CompletionEngine
from .query_context import QueryContext, QueryLanguage, clamp_offset
from .replacement import Replacement, apply_completion
from .suggestions import CompletionItem, SuggestionGroup


logger = logging.getLogger(__name__)


class Phase(enum.StrEnum):
    IDLE = "idle"
    PENDING_DEBOUNCE = "pending-debounce"
    LOADING = "loading"
    OPEN = "open"
    ERROR_SHOWN = "error-shown"


class Key(enum.StrEnum):
    ARROW_UP = "ArrowUp"
    ARROW_DOWN = "ArrowDown"
    ENTER = "Enter"
    TAB = "Tab"
    ESCAPE = "Escape"


@dataclass(frozen=True)
class AutocompleteState:
    phase: Phase = Phase.IDLE
    groups: Sequence[SuggestionGroup] = ()
    items: Sequence[CompletionItem] = ()
    selected_index: int = 0
    hovered_index: int | None = None
    error: str | None = None
    validation_warning: str | None = None
    context: QueryContext | None = None
    round_id: int = 0

    @property
    def is_open(self) -> bool:
        return self.phase in (Phase.OPEN, Phase.ERROR_SHOWN) and bool(self.items)

    @property
    def is_loading(self) -> bool:
        return self.phase == Phase.LOADING

    @property
    def selected_item(self) -> CompletionItem | None:
        if not self.items:
            return None
        return self.items[self.selected_index]


def _normalized(state: AutocompleteState) -> AutocompleteState:
    if not state.items:
        phase = Phase.IDLE if state.phase == Phase.OPEN else state.phase
        return replace(state, phase=phase, selected_index=0, hovered_index=None)
    last = len(state.items) - 1
    hovered = state.hovered_index
    if hovered is not None and not 0 <= hovered <= last:
        hovered = None
    return replace(
        state,
        selected_index=min(max(state.selected_index, 0), last),
        hovered_index=hovered,
    )


StateListener = Callable[[AutocompleteState], None]


class AutocompleteStateMachine:
    def __init__(
        self,
        engine: CompletionEngine,
        *,
        language: QueryLanguage = QueryLanguage.METRICS,
        config: AutocompleteConfig | None = None,
        listener: StateListener | None = None,
    ) -> None:
        self._engine = engine
        self._language = language
        self._config = config or AutocompleteConfig()
        self._listener = listener
        self._state = AutocompleteState()
        self._text = ""
        self._cursor_offset = 0
        self._round_id = 0
        self._debounce_task: asyncio.Task[None] | None = None
        self._round_tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> AutocompleteState:
        return self._state

    @property
    def text(self) -> str:
        return self._text

    @property
    def cursor_offset(self) -> int:
        return self._cursor_offset

    @property
    def language(self) -> QueryLanguage:
        return self._language

    def _set_state(self, state: AutocompleteState) -> None:
        self._state = _normalized(state)
        if self._listener is not None:
            self._listener(self._state)

    def _next_round(self) -> int:
        self._round_id += 1
        return self._round_id

    def _is_stale(self, round_id: int) -> bool:
        return round_id != self._round_id

    def _cancel_debounce(self) -> None:
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None

    def text_changed(self, text: str, cursor_offset: int) -> None:
        self._text = text
        self._cursor_offset = clamp_offset(text, cursor_offset)
        self._cancel_debounce()
        if not text.strip():
            self.reset()
            return
        round_id = self._next_round()
        self._set_state(
            replace(self._state, phase=Phase.PENDING_DEBOUNCE, round_id=round_id)
        )
        self._debounce_task = asyncio.create_task(
            self._debounce(round_id, text, self._cursor_offset)
        )

    async def _debounce(self, round_id: int, text: str, cursor_offset: int) -> None:
        await asyncio.sleep(self._config.debounce_s)
        if self._is_stale(round_id):
            return
        task = asyncio.create_task(self._run_round(round_id, text, cursor_offset))
        self._round_tasks.add(task)
        task.add_done_callback(self._round_tasks.discard)

    async def _run_round(self, round_id: int, text: str, cursor_offset: int) -> None:
        if self._is_stale(round_id):
            return
        self._set_state(replace(self._state, phase=Phase.LOADING, error=None))
        try:
            result = await self._engine.suggest(self._language, text, cursor_offset)
        except CatalogError as ex:
            if self._is_stale(round_id):
                return
            logger.warning("Suggestion round %d failed: %s", round_id, ex)
            self._show_error(str(ex))
            return
        except Exception:
            if self._is_stale(round_id):
                return
            logger.exception("Suggestion round %d failed", round_id)
            self._show_error("Failed to load suggestions")
            return
        if self._is_stale(round_id):
            logger.debug("Dropping results of superseded round %d", round_id)
            return
        items = result.items
        error = result.error_message
        if error:
            phase = Phase.ERROR_SHOWN
        elif items:
            phase = Phase.OPEN
        else:
            phase = Phase.IDLE
        self._set_state(
            AutocompleteState(
                phase=phase,
                groups=tuple(result.groups),
                items=items,
                error=error,
                validation_warning=result.validation.summary,
                context=result.context,
                round_id=round_id,
            )
        )

    def _show_error(self, message: str) -> None:
        self._set_state(
            replace(
                self._state,
                phase=Phase.ERROR_SHOWN,
                groups=(),
                items=(),
                error=message,
                context=None,
            )
        )

    async def settle(self) -> None:
        while True:
            tasks = [
                task
                for task in (self._debounce_task, *self._round_tasks)
                if task is not None and not task.done()
            ]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def key_down(self, key: str, *, run_query: bool = False) -> Replacement | None:
        if key == Key.ENTER and run_query:
            self.close()
            return None
        if key == Key.ESCAPE:
            self.close()
            return None
        state = self._state
        if not state.is_open or not state.items:
            return None
        size = len(state.items)
        if key == Key.ARROW_DOWN:
            self._set_state(
                replace(
                    state,
                    selected_index=(state.selected_index + 1) % size,
                    hovered_index=None,
                )
            )
        elif key == Key.ARROW_UP:
            self._set_state(
                replace(
                    state,
                    selected_index=(state.selected_index - 1) % size,
                    hovered_index=None,
                )
            )
        elif key in (Key.ENTER, Key.TAB):
            return self.commit()
        return None

    def hover(self, index: int) -> None:
        state = self._state
        if not state.is_open or not 0 <= index < len(state.items):
            return
        self._set_state(replace(state, selected_index=index, hovered_index=index))

    def commit(self, index: int | None = None) -> Replacement | None:
        state = self._state
        if state.context is None or not state.is_open:
            return None
        if index is None:
            index = state.selected_index
        if not 0 <= index < len(state.items):
            return None
        result = apply_completion(
            self._text, self._cursor_offset, state.items[index], state.context
        )
        self._text = result.new_text
        self._cursor_offset = result.new_cursor_offset
        self.close()
        return result

    def close(self) -> None:
        self._cancel_debounce()
        self._next_round()
        self._set_state(
            replace(
                self._state,
                phase=Phase.IDLE,
                groups=(),
                items=(),
                error=None,
                context=None,
                round_id=self._round_id,
            )
        )

    def dismiss_error(self) -> None:
        if self._state.phase == Phase.ERROR_SHOWN:
            self.close()

    def blur(self) -> None:
        self.close()

    def reset(self) -> None:
        self._cancel_debounce()
        self._next_round()
        self._set_state(AutocompleteState(round_id=self._round_id))

    async def aclose(self) -> None:
        self.reset()
        await self.settle()
