from django.urls import path

from voting import views_votings

urlpatterns = [
    path("", views_votings.votings, name="votings"),
    path("<int:voting_id>/", views_votings.voting_detail, name="voting-detail"),
    path("<int:voting_id>/update/", views_votings.voting_update, name="voting-update"),
    path("<int:voting_id>/delete/", views_votings.voting_delete, name="voting-delete"),
    path("<int:voting_id>/options/", views_votings.voting_option_add, name="voting-option-add"),
    path(
        "<int:voting_id>/options/<int:option_id>/remove/",
        views_votings.voting_option_remove,
        name="voting-option-remove",
    ),
    path("<int:voting_id>/schedule/", views_votings.voting_schedule, name="voting-schedule"),
    path("<int:voting_id>/start/", views_votings.voting_start, name="voting-start"),
    path("<int:voting_id>/pause/", views_votings.voting_pause, name="voting-pause"),
    path("<int:voting_id>/resume/", views_votings.voting_resume, name="voting-resume"),
    path("<int:voting_id>/end/", views_votings.voting_end, name="voting-end"),
    path("<int:voting_id>/cancel/", views_votings.voting_cancel, name="voting-cancel"),
    path("<int:voting_id>/eligibility/", views_votings.voting_eligibility, name="voting-eligibility"),
    path("<int:voting_id>/vote/", views_votings.voting_vote_submit, name="voting-vote-submit"),
    path("<int:voting_id>/my-vote/", views_votings.voting_my_vote, name="voting-my-vote"),
    path("<int:voting_id>/results/", views_votings.voting_results, name="voting-results"),
    path("<int:voting_id>/statistics/", views_votings.voting_statistics_view, name="voting-statistics"),
    path("<int:voting_id>/audit/", views_votings.voting_public_audit, name="voting-audit"),
]
