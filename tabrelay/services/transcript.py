from typing import List

from tabrelay.models.session import TranscriptEvent

RECORD_SEPARATOR = "\n"


class TranscriptBuffer:
    """
    Cumulative transcript for one session plus the transient interim slot and status line.

    Final results are appended in arrival order and never rewritten. Interim results only
    replace the in-progress slot, which is cleared when a final result lands.
    """

    def __init__(self):
        self._finals: List[str] = []
        self.interim: str = ""
        self.status: str = "idle"

    def apply(self, event: TranscriptEvent):
        if event.is_final:
            self._finals.append(event.text)
            self.interim = ""
        else:
            self.interim = event.text

    def set_status(self, status: str):
        self.status = status

    @property
    def finals(self) -> List[str]:
        return list(self._finals)

    @property
    def text(self) -> str:
        return "".join(f"{t}{RECORD_SEPARATOR}" for t in self._finals)
