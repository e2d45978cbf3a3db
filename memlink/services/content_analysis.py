"""
Rule-based content analysis: keywords, topics, entities, sentiment and language.
"""

import hashlib
import re
from collections import Counter
from typing import List, Optional

from ..models.core import ContentAnalysis
from ..utils.config import ProcessingConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_utc

logger = get_logger(__name__)

STOP_WORDS = frozenset([
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of', 'with', 'by', 'from', 'up', 'about', 'into',
    'through', 'during', 'before', 'after', 'above', 'below', 'between', 'among', 'this', 'that', 'these', 'those', 'i', 'me',
    'we', 'you', 'he', 'she', 'it', 'they', 'them', 'his', 'her', 'its', 'our', 'your', 'their', 'is', 'are', 'was', 'were',
    'be', 'been', 'being', 'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could', 'should', 'may', 'might',
    'must', 'can', 'shall', 'am', 'not', 'no', 'yes'
])

TOPIC_KEYWORDS = {
    'technology': [
        'programming', 'code', 'software', 'development', 'algorithm', 'database', 'api', 'framework', 'library', 'tech',
        'computer', 'system', 'web', 'app', 'mobile', 'cloud', 'ai', 'ml', 'machine learning', 'artificial intelligence',
        'typescript', 'javascript', 'python', 'rust', 'java'
    ],
    'business': [
        'business', 'company', 'market', 'sales', 'revenue', 'profit', 'customer', 'client', 'strategy', 'growth', 'finance',
        'investment', 'startup', 'enterprise', 'corporate', 'management', 'leadership', 'team', 'meeting', 'project', 'budget',
        'roi'
    ],
    'research': [
        'research', 'study', 'analysis', 'data', 'experiment', 'hypothesis', 'theory', 'findings', 'results', 'methodology',
        'academic', 'paper', 'publication', 'journal', 'science', 'scientific', 'investigation', 'observation', 'survey',
        'statistics'
    ],
    'personal': [
        'personal', 'family', 'friend', 'life', 'home', 'health', 'hobby', 'travel', 'food', 'music', 'movie', 'book', 'game',
        'sport', 'exercise', 'vacation', 'weekend', 'birthday', 'celebration', 'memories'
    ],
    'education': [
        'education', 'school', 'university', 'college', 'course', 'class', 'teacher', 'student', 'learn', 'study', 'exam',
        'assignment', 'homework', 'lecture', 'tutorial', 'degree', 'certificate', 'knowledge', 'training'
    ],
    'health': [
        'health', 'medical', 'doctor', 'hospital', 'medicine', 'treatment', 'therapy', 'wellness', 'fitness', 'exercise', 'diet',
        'nutrition', 'mental health', 'psychology', 'symptoms', 'diagnosis'
    ],
    'finance': [
        'money', 'finance', 'banking', 'investment', 'stock', 'crypto', 'currency', 'budget', 'savings', 'loan', 'credit', 'debt',
        'tax', 'portfolio', 'trading', 'economics'
    ]
}

POSITIVE_WORDS = frozenset([
    'good', 'great', 'excellent', 'amazing', 'wonderful', 'fantastic', 'awesome', 'love', 'like', 'enjoy', 'happy', 'excited',
    'pleased', 'satisfied', 'success', 'successful', 'win', 'won', 'achievement', 'accomplish', 'complete', 'finish', 'solve',
    'fix', 'improve', 'better', 'best', 'perfect', 'outstanding', 'brilliant', 'positive', 'optimistic'
])
NEGATIVE_WORDS = frozenset([
    'bad', 'terrible', 'awful', 'horrible', 'hate', 'dislike', 'sad', 'angry', 'frustrated', 'disappointed', 'fail', 'failed',
    'failure', 'problem', 'issue', 'bug', 'error', 'mistake', 'wrong', 'broken', 'difficult', 'hard', 'impossible', 'worst',
    'worse', 'ugly', 'slow', 'annoying', 'negative', 'pessimistic'
])
INTENSIFIERS = frozenset([
    'very', 'extremely', 'incredibly', 'really', 'quite', 'absolutely', 'completely', 'totally', 'definitely', 'certainly',
    'highly', 'deeply', 'truly'
])
# Tokenization splits "n't" contractions, leaving a bare "t"
NEGATORS = frozenset(['not', 'never', 'no', 'none', 'nothing', 'neither', 'nowhere', 'nobody', 't'])

ENGLISH_FUNCTION_WORDS = frozenset(
    ['the', 'and', 'or', 'but', 'is', 'are', 'was', 'were', 'a', 'an', 'in', 'on', 'at', 'to', 'for', 'of', 'with', 'by'])
SENTENCE_START_WORDS = frozenset(
    ['The', 'This', 'That', 'These', 'Those', 'A', 'An', 'I', 'We', 'You', 'He', 'She', 'It', 'They', 'When', 'Where', 'What',
     'How', 'Why'])

EMAIL_RE = re.compile(r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}')
URL_RE = re.compile(r'https?://[^\s]+')
PHONE_RE = re.compile(r'\b\d{3}[-.]?\d{3}[-.]?\d{4}\b')
PROPER_NOUN_RE = re.compile(r'\b[A-Z][a-z]+\b')
NON_WORD_RE = re.compile(r'[^\w\s]')

MAX_PROPER_NOUNS = 10
INTENSIFIER_WEIGHT = 1.5


class ContentAnalysisError(Exception):
    """Custom exception for content analysis errors."""

    def __init__(self, message: str, memory_id: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.memory_id = memory_id
        self.cause = cause


def tokenize(text: str) -> List[str]:
    return NON_WORD_RE.sub(' ', text.lower()).split()


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


class ContentAnalyzer:
    """Derives a ContentAnalysis snapshot from memory text."""

    def __init__(self, config: ProcessingConfig):
        self.config = config

    def analyze(self, content: str, memory_id: str, user_id: str) -> ContentAnalysis:
        """
        Analyze memory content.

        Args:
            content: Memory text
            memory_id: Owning memory ID
            user_id: Owning user ID

        Returns:
            ContentAnalysis snapshot

        Raises:
            ContentAnalysisError: If analysis fails
        """
        try:
            words = tokenize(content)
            return ContentAnalysis(memory_id=memory_id,
                                   user_id=user_id,
                                   content_hash=content_hash(content),
                                   word_count=len(words),
                                   character_count=len(content),
                                   topics=self.classify_topics(content),
                                   entities=self.extract_entities(content) if self.config.enable_entity_extraction else [],
                                   sentiment_score=self.score_sentiment(words)
                                   if self.config.enable_sentiment_analysis else 0.0,
                                   language=self.detect_language(words),
                                   keywords=self.extract_keywords(words),
                                   analyzed_at=now_utc())
        except Exception as e:
            logger.error(f'Content analysis failed for memory {memory_id}: {e}')
            raise ContentAnalysisError(f'Failed to analyze content for memory {memory_id}: {e}', memory_id, cause=e)

    def extract_keywords(self, words: List[str]) -> List[str]:
        counts = Counter(word for word in words if word not in STOP_WORDS and len(word) > 2)
        # Counter.most_common keeps first-seen order among equal counts
        return [word for word, _ in counts.most_common(self.config.max_keywords)]

    @staticmethod
    def classify_topics(content: str) -> List[str]:
        """Topics with at least two keyword hits, or ``['general']``."""
        lowered = content.lower()
        topics = [
            topic for topic, keywords in TOPIC_KEYWORDS.items() if sum(1 for keyword in keywords if keyword in lowered) >= 2
        ]
        return topics or ['general']

    @staticmethod
    def extract_entities(content: str) -> List[str]:
        entities = EMAIL_RE.findall(content) + URL_RE.findall(content) + PHONE_RE.findall(content)
        proper_nouns = [word for word in PROPER_NOUN_RE.findall(content) if word not in SENTENCE_START_WORDS]
        entities.extend(proper_nouns[:MAX_PROPER_NOUNS])
        return list(dict.fromkeys(entities))

    @staticmethod
    def score_sentiment(words: List[str]) -> float:
        """Lexicon sentiment in [-1, 1] with negation and intensifiers."""
        score = 0.0
        intensity = 1.0
        negate = False

        for word in words:
            if word in NEGATORS:
                negate = True
                continue
            if word in INTENSIFIERS:
                intensity = INTENSIFIER_WEIGHT
                continue

            if word in POSITIVE_WORDS:
                polarity = 1.0
            elif word in NEGATIVE_WORDS:
                polarity = -1.0
            else:
                continue

            score += -polarity * intensity if negate else polarity * intensity
            negate = False
            intensity = 1.0

        max_score = len(words) * INTENSIFIER_WEIGHT
        return max(-1.0, min(1.0, score / max_score)) if max_score > 0 else 0.0

    @staticmethod
    def detect_language(words: List[str]) -> str:
        if not words:
            return 'unknown'
        ratio = sum(1 for word in words if word in ENGLISH_FUNCTION_WORDS) / len(words)
        return 'en' if ratio > 0.1 else 'unknown'
