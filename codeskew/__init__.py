from .bindings import Bindings
from .compiler import ComputePipeline, Compiler, find_entry_points, make_prelude
from .includes import (
    ChainIncludeResolver,
    DictIncludeResolver,
    FileIncludeResolver,
    HttpIncludeResolver,
    IncludeResolver,
    default_include_resolver,
)
from .preprocessor import (
    DirectiveSyntaxError,
    GpuCompilationError,
    IncludeNotFoundError,
    Preprocessor,
    RedefinitionError,
    ResourceLimitError,
    SourceMap,
    StringLiteralTooLongError,
    WGSLError,
    preprocess,
)
from .toy import ComputeToy

__version__ = "0.1.0"
version_info = tuple(map(int, __version__.split(".")))  # noqa
