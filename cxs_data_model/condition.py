import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from cxs_data_model.data_models import ConditionModel
from cxs_exception_model.exception import MalformedConditionException


@dataclass(frozen=True)
class ConditionType:
    """
    Metadata describing a condition type, declared by plug-ins.

    Attributes:
        id (str): The condition type id, also the default handler id.
        condition_evaluator (Optional[str]): Evaluator handler id, when it differs from ``id``.
        query_builder (Optional[str]): Query-builder handler id, when it differs from ``id``.
        parent_condition (Optional[Condition]): Condition this type is defined in terms of; its
            parameters may reference the child's parameters with ``parameter::<name>``.
        parent_type_ids (List[str]): Ids of the types this one specializes.
        parameter_schema (List[Dict[str, Any]]): Declared parameters (id, type, multivalued).
        tags (Set[str]): Free-form tags.
    """
    id: str
    condition_evaluator: Optional[str] = None
    query_builder: Optional[str] = None
    parent_condition: Optional["Condition"] = field(default=None, compare=False)
    parent_type_ids: List[str] = field(default_factory=list, compare=False)
    parameter_schema: List[Dict[str, Any]] = field(default_factory=list, compare=False)
    tags: Set[str] = field(default_factory=set, compare=False)

    def evaluator_id(self) -> str:
        return self.condition_evaluator or self.id

    def query_builder_id(self) -> str:
        return self.query_builder or self.id


@dataclass(frozen=True)
class Condition:
    """
    A predicate tree node: a condition type id plus its parameter values. Parameter
    values may hold nested conditions (or lists of them). Equality is structural and
    ignores the attached ``condition_type`` metadata.
    """
    condition_type_id: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    condition_type: Optional[ConditionType] = field(default=None, compare=False, repr=False)

    __hash__ = None

    @staticmethod
    def create(condition_type_id: str, **parameters) -> "Condition":
        return Condition(condition_type_id=condition_type_id, parameters=dict(parameters))

    def get_parameter(self, name: str, default: Any = None) -> Any:
        return self.parameters.get(name, default)

    def with_parameters(self, parameters: Dict[str, Any]) -> "Condition":
        return replace(self, parameters=parameters)

    def with_condition_type(self, condition_type: Optional[ConditionType]) -> "Condition":
        return replace(self, condition_type=condition_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.condition_type_id,
            "parameterValues": {k: _encode_value(v) for k, v in self.parameters.items()},
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Condition":
        try:
            model = ConditionModel.model_validate(data)
        except ValidationError as e:
            raise MalformedConditionException(f"Invalid condition representation: {e}")
        return Condition(
            condition_type_id=model.type,
            parameters={k: _decode_value(v) for k, v in model.parameterValues.items()},
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @staticmethod
    def from_json(text: str) -> "Condition":
        return Condition.from_dict(json.loads(text))


def is_condition_dict(value: Any) -> bool:
    return isinstance(value, dict) and "type" in value and "parameterValues" in value


def _encode_value(value: Any) -> Any:
    if isinstance(value, Condition):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _encode_value(v) for k, v in value.items()}
    return value


def _decode_value(value: Any) -> Any:
    if is_condition_dict(value):
        return Condition.from_dict(value)
    if isinstance(value, list):
        return [_decode_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _decode_value(v) for k, v in value.items()}
    return value
