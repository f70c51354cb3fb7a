from typing import Any

from fastapi import APIRouter, HTTPException

from site_screener.api.deps import FailedJournalDep
from site_screener.models import FailedEntriesPublic, FailedEntry, FailedEntryCreate, Message

router = APIRouter()


@router.get("/", response_model=FailedEntriesPublic)
def read_failed_entries(journal: FailedJournalDep) -> Any:
    entries = journal.entries()
    return FailedEntriesPublic(data=entries, count=len(entries))


@router.post("/", response_model=FailedEntry)
def create_failed_entry(entry_in: FailedEntryCreate, journal: FailedJournalDep) -> Any:
    """
    记录一次失败，超过上限时最旧的条目被丢弃。
    """
    return journal.append(entry_in)


@router.delete("/{entry_id}")
def delete_failed_entry(entry_id: str, journal: FailedJournalDep) -> Message:
    if not journal.delete(entry_id):
        raise HTTPException(status_code=404, detail="Failed entry not found")
    return Message(message="Failed entry deleted successfully")


@router.delete("/")
def clear_failed_entries(journal: FailedJournalDep) -> Message:
    cleared = journal.clear()
    return Message(message=f"Cleared {cleared} failed entries")
