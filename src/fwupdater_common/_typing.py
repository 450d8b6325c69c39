# Copyright 2022 TIER IV, INC. All rights reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


from __future__ import annotations

import sys
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar, Union

from pydantic import Field
from typing_extensions import Annotated

T = TypeVar("T")

EnumT = TypeVar("EnumT", bound=Enum)
StrOrPath = Union[str, Path]

MaybeAwaitable = Union[T, Awaitable[T]]
"""A collaborator callback may be either a plain or a coroutine function."""

# NOTE: starting from 3.11, (str, Enum) no longer formats as its value in f-string,
#       StrEnum(a ReprEnum) is required for that. For < 3.11 we define one with
#       the same behavior.
if sys.version_info >= (3, 11):
    from enum import StrEnum

else:

    class StrEnum(str, Enum):

        def __str__(self) -> str:
            return str.__str__(self)


# pydantic helpers

PositiveSeconds = Annotated[float, Field(gt=0)]


def gen_strenum_validator(
    enum_type: type[EnumT],
) -> Callable[[EnumT | str | Any], EnumT]:
    """A before validator generator that converts input str into <enum_type>.

    NOTE: field with StrEnum type cannot pass pydantic strict validation
          if the input is a plain str.
    """

    def _inner(value: EnumT | str | Any) -> EnumT:
        assert isinstance(
            value, (enum_type, str)
        ), f"{value=} should be {enum_type} or str type"
        return enum_type(value)

    return _inner
