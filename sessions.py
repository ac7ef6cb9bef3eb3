"""
Job to session mapping, passed explicitly to whoever needs it
"""
from typing import Dict, List, Optional, Set


class JobSessionStore:
    """Keyed store of job id -> client session id"""

    def __init__(self):
        self._sessions: Dict[str, str] = {}
        self._jobs: Dict[str, Set[str]] = {}

    def bind(self, job_id: str, session_id: str) -> None:
        previous = self._sessions.get(job_id)
        if previous is not None and previous != session_id:
            self._jobs[previous].discard(job_id)
        self._sessions[job_id] = session_id
        self._jobs.setdefault(session_id, set()).add(job_id)

    def session_for(self, job_id: str) -> Optional[str]:
        return self._sessions.get(job_id)

    def jobs_for(self, session_id: str) -> List[str]:
        return sorted(self._jobs.get(session_id, ()))

    def release(self, job_id: str) -> None:
        """Forget a job, e.g. once it reached a terminal status"""
        session_id = self._sessions.pop(job_id, None)
        if session_id is None:
            return
        jobs = self._jobs.get(session_id)
        if jobs is not None:
            jobs.discard(job_id)
            if not jobs:
                del self._jobs[session_id]

    def __len__(self) -> int:
        return len(self._sessions)
