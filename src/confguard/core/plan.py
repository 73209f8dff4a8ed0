"""Pydantic schemas for deployment plans.

A plan is the hand-off from the producers (hardware detection, tuning
logic) to the engine: a list of ``(target_path, content, domain)`` items
plus the paths that will be touched. Plans are JSON documents:

    {
      "touch_paths": ["/etc/sysctl.d/"],
      "items": [
        {"target": "/etc/sysctl.d/99-tune.conf", "content": "vm.swappiness = 10\\n"},
        {"target": "/etc/default/grub", "mode": "atomic",
         "kernel_params": ["mitigations=auto"]}
      ]
    }
"""

import json
from pathlib import Path, PurePosixPath
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from confguard.core.constants import DEFAULT_TOUCH_PATHS
from confguard.core.validator import ConfigDomain


class PlanItem(BaseModel):
    """One producer-generated change.

    Attributes:
        target: Logical absolute path of the file to change
        content: New text content (stage/append, or atomic replace)
        content_file: File to read the content from instead of ``content``
        kernel_params: For atomic bootloader edits, parameters to append
        domain: Validator domain; inferred from the target when omitted
        mode: ``stage`` (next boot), ``append`` (next boot, appended) or
            ``atomic`` (immediate in-place replace)
    """

    target: str
    content: str | None = None
    content_file: Path | None = None
    kernel_params: list[str] = Field(default_factory=list)
    domain: ConfigDomain | None = None
    mode: Literal["stage", "append", "atomic"] = "stage"

    @field_validator("target")
    @classmethod
    def target_is_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("target must be an absolute path")
        if ".." in PurePosixPath(value).parts:
            raise ValueError("target must not contain '..' components")
        return value

    @model_validator(mode="after")
    def one_content_source(self) -> "PlanItem":
        sources = sum(
            [self.content is not None, self.content_file is not None, bool(self.kernel_params)]
        )
        if sources != 1:
            raise ValueError("exactly one of content, content_file, kernel_params is required")
        if self.kernel_params and self.mode != "atomic":
            raise ValueError("kernel_params only apply to atomic items")
        return self

    def content_bytes(self) -> bytes:
        if self.content_file is not None:
            return self.content_file.read_bytes()
        return (self.content or "").encode("utf-8")


class DeployPlan(BaseModel):
    touch_paths: list[str] = Field(default_factory=lambda: list(DEFAULT_TOUCH_PATHS))
    items: list[PlanItem] = Field(default_factory=list)


def load_plan(path: Path) -> DeployPlan:
    """Parse a JSON plan file; relative ``content_file`` paths resolve next to it."""
    plan = DeployPlan.model_validate(json.loads(path.read_text(encoding="utf-8")))
    for item in plan.items:
        if item.content_file is not None and not item.content_file.is_absolute():
            item.content_file = path.parent / item.content_file
    return plan
