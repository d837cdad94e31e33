import json
import os
import threading
import time
from datetime import datetime
from typing import Any, List, Optional


class SmartLogger:
    """JSON-lines logger with a console echo.

    Large ``params`` payloads are spilled into per-entry detail files so the
    main flow log stays readable. Every knob can be set directly or through
    ``SMART_LOGGER_*`` environment variables.
    """

    LEVEL_PRIORITY = {
        "DEBUG": 0,
        "INFO": 1,
        "WARNING": 2,
        "ERROR": 3,
        "CRITICAL": 4,
    }
    _instance = None

    @classmethod
    def instance(cls):
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls):
        """Drop the cached instance so env changes are picked up."""
        cls._instance = None

    @classmethod
    def log(cls, level, message, category=None, params=None, max_inline_chars=100):
        cls.instance()._log(level, message, category, params, max_inline_chars)

    def __init__(
        self,
        main_log_path=None,
        detail_log_dir=None,
        min_level=None,
        include_all_min_level=None,
        console_output=None,
        file_output=None,
        blacklist_messages=None,
    ):
        self.main_log_path = self._env(main_log_path, "MAIN_LOG_PATH", "logs/crm_agent_flow.jsonl")
        self.detail_log_dir = self._env(detail_log_dir, "DETAIL_LOG_DIR", "logs/details")
        self.min_level = self._env(min_level, "MIN_LEVEL", "INFO")
        self.include_all_min_level = self._env(include_all_min_level, "INCLUDE_ALL_MIN_LEVEL", "ERROR")
        self.console_output = self._env_flag(console_output, "CONSOLE_OUTPUT", True)
        self.file_output = self._env_flag(file_output, "FILE_OUTPUT", False)

        self._lock = threading.Lock()
        self._last_timestamp = None
        self._timestamp_counter = 0
        self.blacklist_messages = self._load_blacklist(blacklist_messages)

        if self.file_output:
            for dir_path in (os.path.dirname(self.main_log_path), self.detail_log_dir):
                if dir_path:
                    os.makedirs(dir_path, exist_ok=True)

    @staticmethod
    def _env(direct_value: Optional[str], key: str, default: str) -> str:
        if direct_value is not None:
            return direct_value
        return os.environ.get(f"SMART_LOGGER_{key}", default)

    def _env_flag(self, direct_value: Optional[bool], key: str, default: bool) -> bool:
        if direct_value is not None:
            return bool(direct_value)
        return self._env(None, key, str(default)).strip().lower() in {"true", "1", "yes"}

    def _load_blacklist(self, direct_value: Optional[Any] = None) -> List[str]:
        """Substrings that suppress a log entry when found in message+category.

        Accepts an iterable, or a JSON array / comma separated string from
        ``SMART_LOGGER_BLACKLIST_MESSAGES``.
        """
        raw = direct_value
        if raw is None:
            raw = os.environ.get("SMART_LOGGER_BLACKLIST_MESSAGES")
        if raw is None:
            return []
        if isinstance(raw, str):
            raw_str = raw.strip()
            if not raw_str:
                return []
            try:
                parsed = json.loads(raw_str)
                items = parsed if isinstance(parsed, list) else []
            except ValueError:
                items = raw_str.split(",")
        else:
            items = list(raw)
        return [str(item).strip() for item in items if item is not None and str(item).strip()]

    def _is_blacklisted(self, text: str) -> bool:
        return any(needle in text for needle in self.blacklist_messages)

    def _next_trace_id(self) -> str:
        # Same-second entries get a _1, _2, ... suffix
        current = str(int(time.time()))
        if self._last_timestamp == current:
            self._timestamp_counter += 1
        else:
            self._last_timestamp = current
            self._timestamp_counter = 1
        return f"{current}_{self._timestamp_counter}"

    def _save_detail_payload(self, trace_id, payload) -> Optional[str]:
        if not self.file_output:
            return None
        filename = f"{trace_id}.json"
        try:
            with open(os.path.join(self.detail_log_dir, filename), "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
        except OSError as e:
            return f"Error saving detail: {e}"
        return filename

    def _priority(self, level: str, default: int) -> int:
        return self.LEVEL_PRIORITY.get(str(level).upper(), default)

    def _should_log(self, level) -> bool:
        return self._priority(level, 1) >= self._priority(self.min_level, 0)

    def _should_include_all(self, level) -> bool:
        return self._priority(level, 1) >= self._priority(self.include_all_min_level, 3)

    def _summarize_params(self, params) -> dict:
        if isinstance(params, dict):
            return {"keys": list(params.keys())}
        if isinstance(params, (list, tuple)):
            return {"type": type(params).__name__, "length": len(params)}
        return {"type": type(params).__name__}

    def _log(self, level, message, category=None, params=None, max_inline_chars=100):
        """
        Args:
            level (str): DEBUG, INFO, WARNING, ERROR or CRITICAL
            message (str): short dotted event name
            category (str): grouping key, e.g. "chat.pipeline.validate"
            params (dict): structured details
            max_inline_chars (int): params longer than this go to a detail file
        """
        text = "" if message is None else str(message)
        if self._is_blacklisted(text + (category or "")):
            return
        if not self._should_log(level):
            return

        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "message": text,
        }
        if category:
            entry["category"] = category

        if params:
            if len(str(params)) <= max_inline_chars or self._should_include_all(level):
                entry["params_summary"] = params
            else:
                detail = self._save_detail_payload(self._next_trace_id(), params)
                if detail is None:
                    entry["detail_save_error"] = "file_output_disabled"
                elif detail.startswith("Error"):
                    entry["detail_save_error"] = detail
                else:
                    entry["has_detail_file"] = True
                    entry["detail_ref"] = detail
                entry["params_summary"] = self._summarize_params(params)

        if self.file_output:
            with self._lock:
                with open(self.main_log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

        if self.console_output:
            category_str = f"[{category}]" if category else ""
            if params and "params_summary" in entry:
                print(f"[{level}]{category_str} {text} {entry['params_summary']}")
            else:
                print(f"[{level}]{category_str} {text}")
