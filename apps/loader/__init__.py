"""
Loader App - Stage 2: DayFiles to Mixpanel

Responsibilities:
- Build id-keyed Slack lookup tables once per load call
- Transform DayFile records into Mixpanel events and user/group profiles
- Upload events, then profiles, each as one retried batch over all files
- Skip profiles when events fail (all files counted failed for both phases)
- Optionally delete DayFiles after a fully successful load

Inputs:
- DayFile paths from the extract stage (or discovered in the blob store)
- Slack member and channel listings
"""
