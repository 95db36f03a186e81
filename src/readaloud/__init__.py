from .content import ChapterLoadError, extract_paragraphs, load_chapter_sentences
from .engine import PlaybackEngine, PlaybackPosition, PlaybackState, PlaybackUpdate
from .epub import ChapterDescriptor, MalformedArchiveError, ParsedBook, parse_epub
from .library import BookNotFoundError, BookRecord, Library, import_epub
from .locator import locate_entry
from .paths import dir_of, resolve_href, strip_fragment
from .sentences import tokenize_sentences
from .settings import PlaybackSettings
from .speech import SpeechCancelled, UtteranceError, VoiceVoxClient, VoiceVoxSpeaker

__all__ = [
    "ChapterDescriptor",
    "ParsedBook",
    "parse_epub",
    "MalformedArchiveError",
    "extract_paragraphs",
    "load_chapter_sentences",
    "ChapterLoadError",
    "tokenize_sentences",
    "locate_entry",
    "resolve_href",
    "dir_of",
    "strip_fragment",
    "PlaybackEngine",
    "PlaybackState",
    "PlaybackUpdate",
    "PlaybackPosition",
    "PlaybackSettings",
    "Library",
    "BookRecord",
    "BookNotFoundError",
    "import_epub",
    "SpeechCancelled",
    "UtteranceError",
    "VoiceVoxClient",
    "VoiceVoxSpeaker",
]
