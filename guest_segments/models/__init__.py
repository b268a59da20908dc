# Models package - database models
from guest_segments.models.tenant import User, Organization, Campground, OrganizationMember, CampgroundMember
from guest_segments.models.guest import Guest
from guest_segments.models.segment import Segment
from guest_segments.models.activity import ActivityLog
