"""GraphQL documents for the GitHub Projects (v2) API."""

_PROJECT_FIELDS = """
      id
      title
      fields(first: 50) {
        nodes {
          ... on ProjectV2Field {
            id
            name
          }
          ... on ProjectV2IterationField {
            id
            name
          }
          ... on ProjectV2SingleSelectField {
            id
            name
            options {
              id
              name
            }
          }
        }
      }
"""

GET_ISSUE_NODE_ID = """
query GetIssueNodeId($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $number) {
      id
    }
  }
}
"""

GET_ISSUE_BY_NODE_ID = """
query GetIssueByNodeId($id: ID!) {
  node(id: $id) {
    ... on Issue {
      id
      number
      repository {
        nameWithOwner
      }
    }
  }
}
"""

GET_USER_PROJECT = (
  """
query GetUserProject($login: String!, $number: Int!) {
  user(login: $login) {
    projectV2(number: $number) {"""
  + _PROJECT_FIELDS
  + """    }
  }
}
"""
)

GET_ORG_PROJECT = (
  """
query GetOrgProject($login: String!, $number: Int!) {
  organization(login: $login) {
    projectV2(number: $number) {"""
  + _PROJECT_FIELDS
  + """    }
  }
}
"""
)

GET_PROJECT_ITEMS = """
query GetProjectItems($projectId: ID!) {
  node(id: $projectId) {
    ... on ProjectV2 {
      items(first: 100) {
        nodes {
          id
          content {
            ... on Issue {
              id
              number
            }
          }
        }
      }
    }
  }
}
"""

ADD_PROJECT_ITEM = """
mutation AddProjectItem($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: { projectId: $projectId, contentId: $contentId }) {
    item {
      id
    }
  }
}
"""

UPDATE_PROJECT_ITEM_FIELD = """
mutation UpdateProjectItemField($projectId: ID!, $itemId: ID!, $fieldId: ID!, $optionId: String!) {
  updateProjectV2ItemFieldValue(
    input: {
      projectId: $projectId
      itemId: $itemId
      fieldId: $fieldId
      value: { singleSelectOptionId: $optionId }
    }
  ) {
    projectV2Item {
      id
    }
  }
}
"""
