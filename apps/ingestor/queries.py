"""GraphQL documents for the forum's discussion API."""

from typing import Any

COMP_POSTS_QUERY = """
query communityCategoryTopicList($categories: [String!], $skip: Int!, $first: Int!, $orderBy: TopicSortingOption, $query: String, $tags: [String!]) {
  categoryTopicList(categories: $categories, skip: $skip, first: $first, orderBy: $orderBy, query: $query, tags: $tags) {
    ...TopicsList
  }
}

fragment TopicsList on TopicConnection {
  edges {
    node {
      id
      title
      post {
        id
        voteCount
        creationDate
      }
      commentCount
      viewCount
    }
  }
}
"""

COMP_POST_CONTENT_QUERY = """
query discussionTopic($topicId: Int!) {
  topic(id: $topicId) {
    id
    title
    post {
      ...DiscussPost
    }
  }
}

fragment DiscussPost on PostNode {
  content
}
"""


def topic_list_payload(skip: int, first: int) -> dict[str, Any]:
    """Request body for one page of the compensation category, newest first."""
    return {
        "query": COMP_POSTS_QUERY,
        "variables": {
            "categories": ["compensation"],
            "skip": skip,
            "first": first,
            "orderBy": "newest_to_oldest",
            "query": "",
            "tags": [],
        },
        "operationName": "communityCategoryTopicList",
    }


def topic_content_payload(topic_id: int) -> dict[str, Any]:
    """Request body for the full content of one topic."""
    return {
        "query": COMP_POST_CONTENT_QUERY,
        "variables": {"topicId": topic_id},
        "operationName": "discussionTopic",
    }
