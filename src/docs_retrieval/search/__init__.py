"""
Search package: normalization, match strategies, ranking and filtering.

- normalizer: case, diacritic and whitespace folding, term extraction, hashing
- fuzzy: edit distance similarity
- strategies: exact and fuzzy scoring of documents
- ranker / engine: blending strategy output into one ranked list
- filters: structural filters compiled into document predicates
- advanced: boolean query syntax
- indexing: chunking and derived fields
- snippet: snippets and term highlighting
"""
