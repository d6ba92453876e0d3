"""
Significant-word frequency analysis of page text.
"""

import re
from collections import Counter
from typing import Dict, FrozenSet, Iterable, List, Optional

STOPWORDS: FrozenSet[str] = frozenset({
    'i', 'me', 'my', 'myself', 'we', 'our', 'ours', 'ourselves', 'you', 'your', 'yours',
    'yourself', 'yourselves', 'he', 'him', 'his', 'himself', 'she', 'her', 'hers',
    'herself', 'it', 'its', 'itself', 'they', 'them', 'their', 'theirs', 'themselves',
    'what', 'which', 'who', 'whom', 'this', 'that', 'these', 'those', 'am', 'is', 'are',
    'was', 'were', 'be', 'been', 'being', 'have', 'has', 'had', 'having', 'do', 'does',
    'did', 'doing', 'a', 'an', 'the', 'and', 'but', 'if', 'or', 'because', 'as', 'until',
    'while', 'of', 'at', 'by', 'for', 'with', 'about', 'against', 'between', 'into',
    'through', 'during', 'before', 'after', 'above', 'below', 'to', 'from', 'up', 'down',
    'in', 'out', 'on', 'off', 'over', 'under', 'again', 'further', 'then', 'once', 'here',
    'there', 'when', 'where', 'why', 'how', 'all', 'any', 'both', 'each', 'few', 'more',
    'most', 'other', 'some', 'such', 'no', 'nor', 'not', 'only', 'own', 'same', 'so',
    'than', 'too', 'very', 's', 't', 'can', 'will', 'just', 'don', 'should', 'now'
})


class PageAnalyzer:
    """
    Builds a word -> count table from raw page text.

    Every character that is not an ASCII letter or whitespace is deleted,
    the text is lowercased, the remainder is split on whitespace runs and
    stopwords are dropped. The analyzer holds no mutable state and is shared
    by all worker threads.
    """

    def __init__(self, stopwords: Optional[Iterable[str]] = None):
        self.stopwords = frozenset(w.lower() for w in stopwords) if stopwords is not None else STOPWORDS
        self.non_letter_pattern = re.compile(r'[^a-zA-Z\s]')

    def tokenize(self, text: str) -> List[str]:
        if not text:
            return []
        cleaned = self.non_letter_pattern.sub('', text).lower()
        return [word for word in cleaned.split() if word not in self.stopwords]

    def analyze(self, text: str) -> Dict[str, int]:
        return dict(Counter(self.tokenize(text)))
