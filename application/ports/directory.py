"""
Student directory port.

The directory owns students, classes and branches; settlement only reads them.
Implementations return None for unknown ids and raise
DirectoryUnavailableException when the directory cannot be reached.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.billing import BranchInfo, ClassInfo, StudentProfile


@runtime_checkable
class StudentDirectory(Protocol):
    async def get_student(self, student_id: str) -> Optional[StudentProfile]: ...

    async def get_class(self, class_id: str) -> Optional[ClassInfo]: ...

    async def get_branch(self, branch_id: str) -> Optional[BranchInfo]: ...
