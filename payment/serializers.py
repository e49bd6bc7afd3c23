from rest_framework import serializers

from .models import Payout, WithdrawalRequest


class WithdrawalRequestSerializer(serializers.ModelSerializer):
    owner_type = serializers.CharField(read_only=True)
    owner_id = serializers.SerializerMethodField()

    class Meta:
        model = WithdrawalRequest
        fields = [
            "id",
            "owner_type",
            "owner_id",
            "amount",
            "deducted_amount",
            "phone_number",
            "account_name",
            "status",
            "provider",
            "provider_reference",
            "metadata",
            "processed_at",
            "created_at",
            "updated_at",
        ]

    def get_owner_id(self, obj):
        return str(obj.owner_id) if obj.owner_id else None


class WithdrawalCreateSerializer(serializers.Serializer):
    owner_type = serializers.ChoiceField(choices=WithdrawalRequest.OwnerType.choices)
    owner_id = serializers.UUIDField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    phone_number = serializers.CharField(max_length=20)
    account_name = serializers.CharField(max_length=255)


class PayoutSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payout
        fields = [
            "id",
            "order",
            "shop",
            "amount",
            "platform_fee",
            "status",
            "payment_method",
            "processed_at",
            "completed_at",
            "metadata",
            "created_at",
        ]
