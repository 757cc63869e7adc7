"""
Output contracts of the model-backed agents.

Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Annotated, List

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _check_relative_path(value: str) -> str:
    if value.startswith("/"):
        raise ValueError("path must be relative")
    if ".." in value:
        raise ValueError("path must not contain '..'")
    if "\0" in value:
        raise ValueError("path must not contain NUL")
    return value


RelativePath = Annotated[str, Field(min_length=1), AfterValidator(_check_relative_path)]
NonEmptyStr = Annotated[str, Field(min_length=1)]


class AgentOutput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


class GeneratedFile(AgentOutput):
    path: RelativePath
    content: NonEmptyStr


class SpecAgentOutput(AgentOutput):
    gherkin_path: RelativePath
    feature_tags: List[NonEmptyStr] = Field(min_length=1)
    gherkin: NonEmptyStr
    files: List[GeneratedFile] = Field(min_length=1)


class TestAgentOutput(AgentOutput):
    __test__ = False

    red_state_confirmed: bool
    test_targets: List[NonEmptyStr] = Field(min_length=1)
    command: NonEmptyStr
    files: List[GeneratedFile] = Field(min_length=1)


class CodeAgentOutput(AgentOutput):
    applied_changes: List[NonEmptyStr] = Field(min_length=1)
    branch_strategy: NonEmptyStr
    commit_message: NonEmptyStr
    files: List[GeneratedFile] = Field(min_length=1)


class ReviewAgentOutput(AgentOutput):
    approved: bool
    checks: List[NonEmptyStr] = Field(min_length=1)
    notes: NonEmptyStr
