"""Room and team invitations, and team creation.

At most one pending invitation exists per (target, item, type). The store
enforces this with a unique constraint; hitting it is the normal
"already invited" outcome and is reported as a Conflict.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import E_INVITATION, INVITE_ROOM, INVITE_TEAM
from .envelope import now_ms
from .errors import (
    Conflict,
    DuplicateKeyError,
    Forbidden,
    InvalidInput,
    InvalidOperation,
    NotFound,
)
from .models import Invitation, Room, Team, User, team_room
from .util import normalize_user_name

if TYPE_CHECKING:
    from .service import HubService


class InvitationWorkflow:
    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.invites")

    def _target(self, target_name: Any) -> User:
        name = normalize_user_name(target_name, max_chars=self.hub.config.max_user_name_len)
        if name is None:
            raise InvalidInput("bad user name")
        target = self.hub.store.get_user(name)
        if target is None or target.banned:
            raise NotFound(f"User {name} does not exist")
        return target

    def invite(self, sender: User, target_name: Any, item_name: Any, invitation_type: str) -> Invitation:
        target = self._target(target_name)

        if invitation_type == INVITE_ROOM:
            item = self.hub.rooms.resolve_name(sender, item_name)
            if self.hub.store.get_room(item) is None:
                raise NotFound(f"Room {item} does not exist")
            if item not in sender.rooms:
                raise Forbidden()
            if item in target.rooms:
                raise Conflict(f"{target.user_name} already follows {item}")
        elif invitation_type == INVITE_TEAM:
            if not sender.team:
                raise NotFound("You are not part of a team")
            team = self.hub.store.get_team(sender.team)
            if team is None:
                raise NotFound(f"Team {sender.team} does not exist")
            if not team.can_invite(sender.user_name):
                raise Forbidden()
            if target.team:
                raise Conflict(f"{target.user_name} is already part of a team")
            item = team.team_name
        else:
            raise InvalidInput("bad invitation type")

        invitation = Invitation(
            target=target.user_name,
            item_name=item,
            invitation_type=invitation_type,
            sender=sender.user_name,
            time=now_ms(),
        )
        try:
            self.hub.store.add_invitation(invitation)
        except DuplicateKeyError as e:
            raise Conflict(f"{target.user_name} has already been invited") from e

        self.log.info(
            "Invitation sent type=%s item=%s from=%s to=%s",
            invitation_type,
            item,
            sender.user_name,
            target.user_name,
        )

        target_link = self.hub.registry.active_connection_of(target.user_name)
        if target_link is not None:
            self.hub.message_helper.send_event(
                target_link, E_INVITATION, {"invitation": invitation.public()}
            )
        return invitation

    def list_invitations(self, user: User) -> list[Invitation]:
        return self.hub.store.list_invitations(user.user_name)

    def answer(
        self,
        target: User,
        item_name: Any,
        invitation_type: str,
        accepted: bool,
        link: Any,
    ) -> Room | Team | None:
        """Accept or decline one pending invitation.

        Accepting a room invitation follows the room without its password.
        Accepting a team invitation joins the team and withdraws every other
        pending team invitation. Declining removes only that invitation.
        """
        if not isinstance(item_name, str) or not item_name.strip():
            raise InvalidInput("bad invitation item")
        item = item_name.strip().lower()
        invitation = self.hub.store.get_invitation(target.user_name, item, invitation_type)
        if invitation is None:
            if invitation_type == INVITE_TEAM and accepted and target.team == item:
                raise Conflict(f"You are already part of {item}")
            raise NotFound("Invitation does not exist")

        if not accepted:
            self.hub.store.remove_invitation(target.user_name, item, invitation_type)
            self.log.info("Invitation declined type=%s item=%s user=%s", invitation_type, item, target.user_name)
            return None

        if invitation_type == INVITE_ROOM:
            room = self.hub.rooms.follow_room(link, item, bypass_password=True)
            self.hub.store.remove_invitation(target.user_name, item, invitation_type)
            self.log.info("Room invitation accepted room=%s user=%s", item, target.user_name)
            return room

        with self.hub.registry.user_lock(target.user_name):
            current = self.hub.store.get_user(target.user_name)
            if current is None:
                raise NotFound(f"User {target.user_name} does not exist")
            if current.team:
                raise Conflict("You are already part of a team")
            team = self.hub.store.get_team(item)
            if team is None:
                self.hub.store.remove_invitation(target.user_name, item, invitation_type)
                raise NotFound(f"Team {item} does not exist")
            self.hub.store.update_user(target.user_name, team=team.team_name)
            removed = self.hub.store.remove_invitations(target.user_name, INVITE_TEAM)

        self.hub.rooms.follow_room(link, team_room(team.team_name), bypass_password=True)
        self.log.info(
            "Team invitation accepted team=%s user=%s withdrawn=%s",
            team.team_name,
            target.user_name,
            removed,
        )
        return team

    def create_team(self, owner: User, team_name: Any, link: Any) -> Team:
        name = normalize_user_name(team_name, max_chars=self.hub.config.max_user_name_len)
        if name is None:
            raise InvalidInput("bad team name")
        if owner.team:
            raise Conflict("You are already part of a team")

        team = Team(team_name=name, owner=owner.user_name, admins={owner.user_name})
        room = Room(
            room_name=team_room(name),
            owner=owner.user_name,
            access_level=self.hub.config.default_access_level,
            visibility=self.hub.config.admin_access_level,
        )
        try:
            self.hub.store.add_team(team)
        except DuplicateKeyError as e:
            raise Conflict(f"Team {name} already exists") from e
        try:
            self.hub.store.add_room(room)
        except DuplicateKeyError:
            self.log.warning("Team room already existed team=%s", name)
        self.hub.store.update_user(owner.user_name, team=name)
        self.hub.store.remove_invitations(owner.user_name, INVITE_TEAM)

        self.hub.rooms.follow_room(link, room.room_name, bypass_password=True)
        self.log.info("Team created team=%s owner=%s", name, owner.user_name)
        return team

    def add_team_admin(self, requester: User, user_name: Any) -> Team:
        if not requester.team:
            raise NotFound("You are not part of a team")
        team = self.hub.store.get_team(requester.team)
        if team is None:
            raise NotFound(f"Team {requester.team} does not exist")
        if team.owner != requester.user_name:
            raise Forbidden()
        member = self._target(user_name)
        if member.team != team.team_name:
            raise InvalidOperation(f"{member.user_name} is not part of {team.team_name}")
        self.hub.store.add_team_admin(team.team_name, member.user_name)
        team.admins.add(member.user_name)
        return team
