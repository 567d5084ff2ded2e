"""
Ingestor App - Compensation Offer Ingestion

Responsibilities:
- Incremental fetch of compensation posts from the forum GraphQL API
- Offer extraction with a hosted language model (Gemini or Perplexity)
- Daily call budget, cooperative throttling, rate-limit backoff
- Deduplicating merge into the offer dataset
- Local persistence with an optional GitHub Gist mirror
- Save-on-interrupt (SIGINT/SIGTERM)

Output:
- data/parsed_comps.json: JSON array of offers
- data/.leetcomp_metadata.json: {lastPostId, lastFetchTime, totalOffers}
"""
