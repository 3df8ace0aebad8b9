"""Error taxonomy of the content to study-material pipeline"""


class StudyGraphError(Exception):
    """Base class for all pipeline errors"""


class AIConfigurationError(StudyGraphError):
    """The text-generation collaborator is not configured"""


class ExtractionError(StudyGraphError):
    """Concept extraction failed for brand-new content"""


class MaterialGenerationError(StudyGraphError):
    """AI generation of a material type failed"""


class MalformedResponseError(MaterialGenerationError):
    """The collaborator answered with data that does not match the expected shape"""


class ConversionError(StudyGraphError):
    """One content item could not be converted to text"""


class StorageError(StudyGraphError):
    """Reading from or writing to a store failed"""
